"""Errors that carry the reference of the build they came from."""

from __future__ import annotations

from typing import Any


class BuildError(Exception):
    """A build failure tied to a build reference; wraps the original error."""

    def __init__(self, ref: str, error: BaseException) -> None:
        super().__init__(str(error))
        self.ref = ref
        self.error = error
        self.__cause__ = error

    def __str__(self) -> str:
        return str(self.error)

    def to_proto(self) -> dict[str, Any]:
        """The typed payload sent along with the error."""
        return {"Ref": self.ref}

    def wrap_error(self, error: BaseException) -> "BuildError":
        """Attach the same build reference to another error."""
        return BuildError(self.ref, error)


def wrap_build(err: BaseException | None, ref: str) -> BuildError | None:
    """Tie an error to a build reference; None stays None."""
    if err is None:
        return None
    return BuildError(ref, err)