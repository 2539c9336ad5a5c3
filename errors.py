class ServiceError(Exception):
    """Raised by the service layer; app.py turns it into a JSON error response."""

    status_code = 400

    def __init__(self, msg: str, status_code: int = None):
        super().__init__(msg)
        self.msg = msg
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(ServiceError):
    status_code = 404


class ForbiddenError(ServiceError):
    status_code = 403


class ConflictError(ServiceError):
    status_code = 409
