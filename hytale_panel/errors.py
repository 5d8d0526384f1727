class ServiceError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class NotFoundError(ServiceError):
    def __init__(self, message: str = "Not found") -> None:
        super().__init__(404, message)


class PathTraversalError(ServiceError):
    def __init__(self, message: str = "Path traversal attempt detected") -> None:
        super().__init__(400, message)


class UpstreamError(ServiceError):
    def __init__(self, message: str) -> None:
        super().__init__(502, message)
