from __future__ import annotations


class RollupError(Exception):
    """Base class for errors raised by the rollup engine and its read paths."""


class InvalidTenantError(RollupError):
    def __init__(self, application_id: str):
        super().__init__(f"Invalid application ID: {application_id}")
        self.application_id = application_id


class BucketNotFoundError(RollupError):
    def __init__(self, collection: str, bucket_id: str):
        super().__init__(f"Unable to find bucket {bucket_id!r} in {collection}")
        self.collection = collection
        self.bucket_id = bucket_id


class StoreError(RollupError):
    """A store operation failed. Merges that raise this are not retried."""


class StoreUnavailableError(StoreError):
    """The backing store could not be reached; safe to retry read paths."""


class WindowNotConfiguredError(RollupError):
    def __init__(self, application_id: str, window: str):
        super().__init__(f"Window {window} is not configured for {application_id}")
        self.application_id = application_id
        self.window = window
