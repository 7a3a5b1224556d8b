from __future__ import annotations

from typing import List, Optional, Protocol


class KeyValueStore(Protocol):
    """Protocol for durable string key-value backends."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def put_if_absent(self, key: str, value: str, max_age_s: Optional[float] = None) -> bool: ...

    def delete_if_equals(self, key: str, value: str) -> bool: ...

    def keys(self, prefix: str = "") -> List[str]: ...
