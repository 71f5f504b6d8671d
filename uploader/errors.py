"""Errors raised by the upload queue and the remote upload client."""


class UploaderError(Exception):
    """Base class for every uploader error."""

    pass


class ValidationError(UploaderError):
    """Queue contents or user input failed validation. Nothing was changed."""

    pass


class ExtractionFailure(UploaderError):
    """Duration probing or frame capture failed for one source."""

    pass


class RemoteAPIError(UploaderError):
    """The clipdeck API returned an error or could not be reached (status_code 0)."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"API error {status_code}: {message}")


class UploadError(RemoteAPIError):
    """An upload (or other API call) failed. Isolated to the item being uploaded."""

    pass


class AuthorizationError(RemoteAPIError):
    """Missing or rejected admin credential."""

    def __init__(self, message: str = "Admin password required", status_code: int = 401):
        super().__init__(status_code, message)


class NotFoundError(RemoteAPIError):
    """The requested video does not exist."""

    def __init__(self, message: str = "Video not found", status_code: int = 404):
        super().__init__(status_code, message)


class QueueItemNotFoundError(UploaderError):
    """No queue item with the given id."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"No queue item with id {item_id}")


class QueueItemLockedError(UploaderError):
    """The item is uploading or already done and can't be changed."""

    def __init__(self, item_id: str, status: str):
        self.item_id = item_id
        self.status = status
        super().__init__(f"Queue item {item_id} is {status} and can't be modified")


class InvalidTransitionError(UploaderError):
    """A queue item was asked to move between states that aren't connected."""

    def __init__(self, item_id: str, current: str, target: str):
        self.item_id = item_id
        self.current = current
        self.target = target
        super().__init__(f"Queue item {item_id} can't go from {current} to {target}")
