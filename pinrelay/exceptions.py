from typing import Any


class PinRelayError(Exception):
    pass


class InvalidPin(PinRelayError):
    def __init__(self, pin: Any, reason: str):
        super(InvalidPin, self).__init__(reason)
        self.pin = pin
        self.reason = reason


class RegistryError(PinRelayError):
    """
    The session store failed in a way the caller cannot do anything about:
    the database is unreachable, an operation timed out and so on.
    """


class UniquenessConflict(RegistryError):
    def __init__(self, pin: str):
        super(UniquenessConflict, self).__init__(
            f"could not resolve concurrent claims for PIN {pin!r}"
        )
        self.pin = pin


class InvalidFrame(PinRelayError):
    pass
