from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urlparse, unquote
from urllib.request import url2pathname


@dataclass(frozen=True)
class StoredObject:
    uri: str


class Storage(Protocol):
    def put_upload(self, *, file_id: str, blob: bytes) -> StoredObject: ...
    def get_bytes(self, *, uri: str) -> bytes: ...
    def delete_upload(self, *, file_id: str) -> None: ...
    def put_archive(self, *, name: str, blob: bytes) -> StoredObject: ...
    def archive_path(self, name: str) -> Path: ...
    def put_json_atomic(self, *, name: str, obj: Any) -> StoredObject: ...
    def get_json_if_exists(self, *, name: str) -> Any: ...


class LocalStorage:
    """
    Layout under root:
      uploads/<file_id>/input.pdf
      archives/<archive name>.zip
      state/<name>.json
    """

    def __init__(self, root_dir: str) -> None:
        self.root = Path(root_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def _upload_dir(self, file_id: str) -> Path:
        return self.root / "uploads" / file_id

    def put_upload(self, *, file_id: str, blob: bytes) -> StoredObject:
        p = self._upload_dir(file_id) / "input.pdf"
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(blob)
        return StoredObject(uri=p.resolve().as_uri())

    def delete_upload(self, *, file_id: str) -> None:
        d = self._upload_dir(file_id)
        if not d.exists():
            return
        for p in d.iterdir():
            p.unlink()
        d.rmdir()

    def get_bytes(self, *, uri: str) -> bytes:
        u = urlparse(uri)
        if u.scheme != "file":
            raise ValueError(f"unsupported uri scheme: {u.scheme}")
        path = url2pathname(unquote(u.path))
        if len(path) >= 3 and (path[0] in ("\\", "/")) and path[2] == ":":
            path = path[1:]
        if u.netloc:
            path = f"\\\\{u.netloc}{path}"
        return Path(path).read_bytes()

    def archive_path(self, name: str) -> Path:
        # archive names are generated, never user input; still refuse traversal
        p = (self.root / "archives" / name).resolve()
        if p.parent != (self.root / "archives").resolve():
            raise ValueError(f"invalid archive name: {name}")
        return p

    def put_archive(self, *, name: str, blob: bytes) -> StoredObject:
        p = self.archive_path(name)
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_suffix(p.suffix + ".tmp")
        tmp.write_bytes(blob)
        tmp.replace(p)
        return StoredObject(uri=p.as_uri())

    def put_json_atomic(self, *, name: str, obj: Any) -> StoredObject:
        out = self.root / "state" / name
        out.parent.mkdir(parents=True, exist_ok=True)

        tmp = out.with_suffix(out.suffix + ".tmp")
        tmp.write_text(json.dumps(obj, indent=2), encoding="utf-8")
        tmp.replace(out)  # atomic on same filesystem

        return StoredObject(uri=out.resolve().as_uri())

    def get_json_if_exists(self, *, name: str) -> Any:
        p = self.root / "state" / name
        if not p.exists():
            return None
        return json.loads(p.read_text(encoding="utf-8"))
