"""
StubTap Common Utilities

Resource loading for response bodies kept in files next to the tests.
"""

from pathlib import Path
from typing import List, Optional, Sequence, Union

from ..errors import ResourceLoadError


class ResourceLoader:
    """
    Resolve and read response body files.

    Lookup order for a relative name:
    1. Each configured resource directory, in order
    2. The name as a plain filesystem path (relative to the working directory)

    Absolute paths are read directly.

    Example:
        loader = ResourceLoader(['tests/resources'])
        body = loader.read_text('responses/login-success.json')
    """

    def __init__(self, resource_dirs: Optional[Sequence[Union[str, Path]]] = None):
        """
        Initialize resource loader.

        Args:
            resource_dirs: Directories searched before the working directory
        """
        self.resource_dirs: List[Path] = [Path(d) for d in (resource_dirs or [])]

    def resolve(self, name: str) -> Path:
        """
        Find the file for a resource name.

        Raises:
            ResourceLoadError: If no candidate exists
        """
        candidates = []
        path = Path(name)
        if not path.is_absolute():
            candidates.extend(d / path for d in self.resource_dirs)
        candidates.append(path)

        for candidate in candidates:
            if candidate.is_file():
                return candidate

        raise ResourceLoadError(
            f"Resource not found: {name}",
            resource=name,
            details={'searched': [str(c) for c in candidates]}
        )

    def read_bytes(self, name: str) -> bytes:
        """Read a resource as raw bytes."""
        path = self.resolve(name)
        try:
            return path.read_bytes()
        except OSError as e:
            raise ResourceLoadError(f"Could not read resource {name}: {e}", resource=name) from e

    def read_text(self, name: str, encoding: str = 'utf-8') -> str:
        """Read a resource as text."""
        data = self.read_bytes(name)
        try:
            return data.decode(encoding)
        except UnicodeDecodeError as e:
            raise ResourceLoadError(f"Resource {name} is not valid {encoding}: {e}", resource=name) from e
