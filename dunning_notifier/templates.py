"""
Dunning Notifier -- Template Resolution

Picks and renders the message for one (channel, milestone, party type).

Resolution is an ordered list of strategies evaluated until the first hit:
  1. store template for the exact (channel, milestone, party type)
  2. store template for (channel, milestone) with no party type (generic)
  3. built-in template rendered from the Jinja2 files in builtin_templates/

The built-in strategy never misses, so a message can always be produced.

Template content uses single-brace placeholders from a closed vocabulary:
    {recipient_name}     principal contact's name (or a fallback label)
    {destination_label}  franchise unit / account label
    {obligation_kind}    e.g. "Royalties"
    {formatted_amount}   "R$ 1.234,56"
    {elapsed_days}       whole days since the obligation was opened

Unknown placeholders are left verbatim.  Jinja2 only composes the built-in
wording (per milestone and party type); the placeholder substitution above
is applied afterwards to every template alike.

Usage:
    from dunning_notifier.templates import TemplateResolver, YamlTemplateStore

    resolver = TemplateResolver(YamlTemplateStore("templates.yaml"))
    template = resolver.resolve(Channel.EMAIL, 7, PartyType.ORGANIZATION)
    message = resolver.render(template, build_variables(obligation, 7))
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

import yaml
from jinja2 import Environment, FileSystemLoader

from .models import Channel, Obligation, PartyType

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_BUILTIN_TEMPLATE_DIR = Path(__file__).resolve().parent / "builtin_templates"

TEMPLATE_VARIABLES = (
    "recipient_name",
    "destination_label",
    "obligation_kind",
    "formatted_amount",
    "elapsed_days",
)

_PLACEHOLDER = re.compile(r"\{(\w+)\}")

DEFAULT_EMAIL_SUBJECT = "Cobrança Pendente - {recipient_name}"

# Header title and color per milestone level (level = highest key <= milestone)
_TONES: dict[int, tuple[str, str]] = {
    3: ("Lembrete de Cobrança", "#fcc300"),
    7: ("Aviso Importante", "#f9a825"),
    15: ("Alerta de Cobrança", "#ef6c00"),
    30: ("Notificação Urgente", "#c62828"),
}


class TemplateSource(str, Enum):
    STORE_SPECIFIC = "store_specific"
    STORE_GENERIC = "store_generic"
    BUILTIN = "builtin"


@dataclass(frozen=True)
class Template:
    """Message template as stored; placeholders still unresolved."""

    channel: Channel
    milestone: int
    body: str
    party_type: Optional[PartyType] = None      # None == generic
    subject: Optional[str] = None               # e-mail only
    source: TemplateSource = TemplateSource.BUILTIN


@dataclass(frozen=True)
class RenderedMessage:
    subject: Optional[str]
    body: str


# ---------------------------------------------------------------------------
# Helper: Format Utilities
# ---------------------------------------------------------------------------

def format_brl(amount: float | None) -> str:
    """Format a float as Brazilian currency: 'R$ 1.234,56'.

    Returns 'R$ 0,00' for None.
    """
    if amount is None:
        amount = 0.0
    us_style = f"{abs(amount):,.2f}"                # 1,234.56
    br_style = us_style.replace(",", "_").replace(".", ",").replace("_", ".")
    sign = "-" if amount < 0 else ""
    return f"{sign}R$ {br_style}"


def build_variables(obligation: Obligation, elapsed_days: int) -> dict[str, str]:
    """Template variables for one obligation."""
    return {
        "recipient_name": obligation.recipient_label,
        "destination_label": obligation.destination_label,
        "obligation_kind": obligation.kind_label,
        "formatted_amount": format_brl(obligation.original_amount),
        "elapsed_days": str(elapsed_days),
    }


def substitute(content: str, variables: dict[str, Any]) -> str:
    """Replace ``{name}`` placeholders; unknown names stay as written."""

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in variables:
            return str(variables[name])
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, content)


def html_to_plaintext(html_content: str) -> str:
    """Convert rendered HTML e-mail body to a plain-text alternative.

    Strips tags, keeps paragraph breaks, decodes entities.
    """
    text = html_content

    # Drop the <head> (title, CSS) entirely
    text = re.sub(r"<head[^>]*>.*?</head>", "", text, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<style[^>]*>.*?</style>", "", text, flags=re.IGNORECASE | re.DOTALL)

    # Replace common block elements with newlines
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</div>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</p>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</li>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<li[^>]*>", "  - ", text, flags=re.IGNORECASE)

    # Extract link text + URL from anchor tags
    text = re.sub(
        r'<a[^>]+href=["\']([^"\']+)["\'][^>]*>(.*?)</a>',
        r"\2 (\1)",
        text,
        flags=re.IGNORECASE | re.DOTALL,
    )

    # Strip all remaining HTML tags
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)

    lines = [line.strip() for line in text.split("\n")]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


# ---------------------------------------------------------------------------
# Template stores
# ---------------------------------------------------------------------------

class TemplateStore(Protocol):
    """Externally edited templates, read-only from here."""

    def lookup(
        self, channel: Channel, milestone: int, party_type: Optional[PartyType]
    ) -> Optional[Template]:
        ...


_PARTY_ALIASES = {
    "cpf": PartyType.INDIVIDUAL,
    "cnpj": PartyType.ORGANIZATION,
}


def _parse_party_type(raw: Any) -> Optional[PartyType]:
    """'individual'/'organization' (or 'cpf'/'cnpj'); empty means generic."""
    if not raw:
        return None
    key = str(raw).strip().lower()
    if key in _PARTY_ALIASES:
        return _PARTY_ALIASES[key]
    return PartyType(key)


class YamlTemplateStore:
    """Templates kept in a YAML file.

    Format::

        templates:
          - channel: whatsapp
            milestone: 7
            party_type: individual      # omit for the generic template
            body: |
              Olá {recipient_name}! ...
          - channel: email
            milestone: 30
            subject: "Notificação Urgente - {destination_label}"
            body: "<p>...</p>"
            active: false               # ignored by lookup

    The file is read on first lookup and cached; ``reload()`` re-reads it.
    A missing file is an empty store.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._templates: Optional[dict[tuple[Channel, int, Optional[PartyType]], Template]] = None

    def reload(self) -> None:
        self._templates = self._load()

    def lookup(
        self, channel: Channel, milestone: int, party_type: Optional[PartyType]
    ) -> Optional[Template]:
        if self._templates is None:
            self.reload()
        return self._templates.get((channel, milestone, party_type))

    def _load(self) -> dict[tuple[Channel, int, Optional[PartyType]], Template]:
        if not self.path.exists():
            logger.info("Template store %s not found; using built-in templates only", self.path)
            return {}

        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        templates: dict[tuple[Channel, int, Optional[PartyType]], Template] = {}
        for i, entry in enumerate(data.get("templates") or []):
            if not entry.get("active", True):
                continue
            try:
                channel = Channel(str(entry["channel"]).lower())
                milestone = int(entry["milestone"])
                body = str(entry["body"])
                party_raw = entry.get("party_type")
                party_type = _parse_party_type(party_raw)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Ignoring template #%d in %s: %s", i, self.path, exc)
                continue

            source = TemplateSource.STORE_SPECIFIC if party_type else TemplateSource.STORE_GENERIC
            templates[(channel, milestone, party_type)] = Template(
                channel=channel,
                milestone=milestone,
                body=body,
                party_type=party_type,
                subject=entry.get("subject"),
                source=source,
            )

        logger.debug("Loaded %d templates from %s", len(templates), self.path)
        return templates


# ---------------------------------------------------------------------------
# Built-in templates
# ---------------------------------------------------------------------------

class BuiltinTemplates:
    """Hard-coded minimal templates, worded per milestone and party type."""

    def __init__(self, template_dir: str | Path | None = None) -> None:
        self.template_dir = Path(template_dir) if template_dir else _BUILTIN_TEMPLATE_DIR
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

    @staticmethod
    def level_for(milestone: int) -> int:
        """Tone bucket: the highest known level not above ``milestone``."""
        levels = [lvl for lvl in sorted(_TONES) if lvl <= milestone]
        return levels[-1] if levels else min(_TONES)

    def get(self, channel: Channel, milestone: int, party_type: PartyType) -> Template:
        level = self.level_for(milestone)
        title, color = _TONES[level]
        context = {
            "milestone": milestone,
            "level": level,
            "individual": party_type is PartyType.INDIVIDUAL,
            "title": title,
            "color": color,
        }

        if channel is Channel.WHATSAPP:
            body = self.env.get_template("whatsapp.txt.j2").render(**context)
            subject = None
        else:
            body = self.env.get_template("email.html.j2").render(**context)
            subject = self.env.get_template("email_subject.txt.j2").render(**context).strip()

        return Template(
            channel=channel,
            milestone=milestone,
            body=body.strip(),
            party_type=party_type,
            subject=subject,
            source=TemplateSource.BUILTIN,
        )


# ===========================================================================
# Resolver
# ===========================================================================

class TemplateResolver:
    """Ordered template lookup plus placeholder rendering.

    Args:
        store: External template store, or None to use built-ins only.
        builtin: Built-in template source (tests may pass their own).
    """

    def __init__(
        self,
        store: Optional[TemplateStore] = None,
        builtin: Optional[BuiltinTemplates] = None,
    ) -> None:
        self.store = store
        self.builtin = builtin or BuiltinTemplates()
        self._strategies: list[tuple[str, Callable[[Channel, int, PartyType], Optional[Template]]]] = [
            ("store exact", self._store_exact),
            ("store generic", self._store_generic),
            ("builtin", self._builtin),
        ]

    def resolve(self, channel: Channel, milestone: int, party_type: PartyType) -> Template:
        """First template produced by the strategy list; never None."""
        for name, strategy in self._strategies:
            template = strategy(channel, milestone, party_type)
            if template is not None:
                logger.debug("Template for %s/%d/%s resolved via %s",
                             channel.value, milestone, party_type.value, name)
                return template
        # builtin never misses; kept for type checkers
        return self.builtin.get(channel, milestone, party_type)

    def render(self, template: Template, variables: dict[str, Any]) -> RenderedMessage:
        """Substitute variables into subject and body.  Pure.

        E-mail bodies are HTML, so values are escaped there; subjects and
        WhatsApp text take them as-is.
        """
        subject: Optional[str] = None
        body_variables = variables
        if template.channel is Channel.EMAIL:
            subject = substitute(template.subject or DEFAULT_EMAIL_SUBJECT, variables)
            body_variables = {name: html.escape(str(value)) for name, value in variables.items()}
        elif template.subject:
            subject = substitute(template.subject, variables)
        return RenderedMessage(subject=subject, body=substitute(template.body, body_variables))

    # -------------------------------------------------------------------
    # Strategies
    # -------------------------------------------------------------------

    def _store_lookup(
        self, channel: Channel, milestone: int, party_type: Optional[PartyType]
    ) -> Optional[Template]:
        if self.store is None:
            return None
        try:
            return self.store.lookup(channel, milestone, party_type)
        except Exception as exc:
            logger.warning("Template store lookup failed for %s/%d: %s",
                           channel.value, milestone, exc)
            return None

    def _store_exact(self, channel: Channel, milestone: int, party_type: PartyType) -> Optional[Template]:
        return self._store_lookup(channel, milestone, party_type)

    def _store_generic(self, channel: Channel, milestone: int, party_type: PartyType) -> Optional[Template]:
        return self._store_lookup(channel, milestone, None)

    def _builtin(self, channel: Channel, milestone: int, party_type: PartyType) -> Optional[Template]:
        return self.builtin.get(channel, milestone, party_type)
