"""Exceptions raised by the dunning notifier."""


class NotifierError(Exception):
    """Base exception for the notifier package"""

    pass


class InvalidTimestamp(NotifierError):
    """An obligation's creation timestamp could not be parsed"""

    pass


class InvalidScheduleConfig(NotifierError):
    """Schedule parameters are out of range or incomplete"""

    pass


class DeliveryError(NotifierError):
    """A delivery adapter could not hand the message to its transport"""

    pass


class StoreError(NotifierError):
    """The obligation / marker store rejected an operation"""

    pass
