from __future__ import annotations

import os
from pathlib import Path
from typing import Protocol
from urllib.parse import quote


class ObjectStoreError(RuntimeError):
    pass


class ObjectExistsError(ObjectStoreError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Object already exists: {path}")
        self.path = path


class ObjectStore(Protocol):
    def upload(self, path: str, data: bytes, *, content_type: str, overwrite: bool = False) -> str: ...

    def exists(self, path: str) -> bool: ...

    def public_url(self, path: str) -> str: ...


def _clean_path(path: str) -> str:
    p = (path or "").strip().lstrip("/")
    if not p or any(part in {"", ".", ".."} for part in p.split("/")):
        raise ObjectStoreError(f"Invalid object path: {path!r}")
    return p


class LocalObjectStore:
    """Filesystem bucket with stable public URLs.

    Uploads default to no-overwrite: an existing object at the same path raises ObjectExistsError.
    Writes go through a temp file + `os.link`, so two concurrent uploads cannot both win.
    """

    def __init__(self, root_dir: str | Path, *, public_base_url: str) -> None:
        self.root_dir = Path(root_dir).expanduser().resolve()
        self.root_dir.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _full_path(self, path: str) -> Path:
        return self.root_dir / _clean_path(path)

    def exists(self, path: str) -> bool:
        return self._full_path(path).exists()

    def upload(self, path: str, data: bytes, *, content_type: str, overwrite: bool = False) -> str:
        target = self._full_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)

        tmp = target.with_name(f".{target.name}.{os.getpid()}.tmp")
        tmp.write_bytes(data)
        try:
            if overwrite:
                os.replace(tmp, target)
            else:
                try:
                    os.link(tmp, target)
                except FileExistsError as e:
                    raise ObjectExistsError(_clean_path(path)) from e
        finally:
            if tmp.exists():
                tmp.unlink()
        return _clean_path(path)

    def read(self, path: str) -> bytes:
        return self._full_path(path).read_bytes()

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{quote(_clean_path(path))}"
