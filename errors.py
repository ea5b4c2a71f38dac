class CareMatchError(Exception):
    """Base class for every error raised by the dispatch core."""

    status_code = 500

    def __init__(self, message=""):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"success": False, "error": type(self).__name__, "message": self.message}


class ValidationError(CareMatchError):
    status_code = 400

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = list(errors or [])

    def to_dict(self):
        payload = super().to_dict()
        if self.errors:
            payload["errors"] = self.errors
        return payload


class NotFoundError(CareMatchError):
    status_code = 404


class NoAvailableResourceError(CareMatchError):
    """
    No bed or no ambulance could be secured.

    This is a degraded outcome, not a failure of the service: callers surface
    it together with guidance to contact emergency services directly.
    """

    status_code = 200

    def __init__(self, message, resource="bed", dispatch_phone=None):
        super().__init__(message)
        self.resource = resource
        self.dispatch_phone = dispatch_phone

    def to_dict(self):
        payload = super().to_dict()
        payload["resource"] = self.resource
        if self.dispatch_phone:
            payload["dispatchPhone"] = self.dispatch_phone
        return payload


class ReservationConflict(CareMatchError):
    status_code = 409


class InvalidStateTransition(CareMatchError):
    status_code = 409

    def __init__(self, message, current=None, target=None):
        super().__init__(message)
        self.current = current
        self.target = target


class ExternalServiceError(CareMatchError):
    status_code = 502

    def __init__(self, message, service=None):
        super().__init__(message)
        self.service = service
