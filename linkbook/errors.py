class LinkBookError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LinkBookError):
    status_code = 400


class NotFoundError(LinkBookError):
    status_code = 404


class PermissionDeniedError(LinkBookError):
    status_code = 403


class FormatError(LinkBookError):
    """Raised for import files that cannot be read as bookmarks."""

    status_code = 400


class ExportError(LinkBookError):
    status_code = 400
