"""Exceptions raised by the merge engine and translated to HTTP by routers."""


class MergeError(Exception):
    """Base class for merge failures."""


class MergeValidationError(MergeError, ValueError):
    """The merge request is malformed; nothing was written."""


class DatasetNotFoundError(MergeError, LookupError):
    """A source or target dataset id does not exist; nothing was written."""

    def __init__(self, dataset_ids: list[int]) -> None:
        self.dataset_ids = dataset_ids
        ids = ", ".join(str(i) for i in dataset_ids)
        super().__init__(f"Dataset(s) not found: {ids}")


class MergeTimeoutError(MergeError, TimeoutError):
    """The merge exceeded its transaction deadline and was rolled back."""


class MergeFailedError(MergeError):
    """The merge transaction failed and was rolled back.

    ``result`` carries the statistics and errors gathered up to the
    failure, including object keys that were already written.
    """

    def __init__(self, message: str, result) -> None:
        super().__init__(message)
        self.result = result
