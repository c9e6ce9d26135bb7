class LeaseNotHeld(RuntimeError):
    """Duty logic started without this instance owning the named lease."""


class InvalidTransition(ValueError):
    pass


class LaunchRejected(RuntimeError):
    pass
