"""Provider protocol and errors."""

from typing import Optional, Protocol, runtime_checkable


class ProviderError(Exception):
    """A cloud operation failed."""

    def __init__(self, message: str, command: Optional[list[str]] = None,
                 returncode: Optional[int] = None, stderr: str = ''):
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


@runtime_checkable
class Provider(Protocol):
    """Backend that performs resource operations against a cloud.

    Every method receives the resource name, its type, and its interpolated
    properties. Outputs are dicts carrying at least 'id' and 'name' plus the
    attributes the type exports.
    """

    def read(self, name: str, rtype: str, props: dict) -> Optional[dict]:
        """Return current outputs, or None if the resource does not exist."""

    def create(self, name: str, rtype: str, props: dict) -> dict:
        """Create the resource and return its outputs."""

    def update(self, name: str, rtype: str, props: dict, changed: list[str]) -> dict:
        """Apply changed properties in place and return outputs."""

    def delete(self, name: str, rtype: str, props: dict) -> None:
        """Delete the resource. Deleting an absent resource succeeds."""
