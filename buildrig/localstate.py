"""Per-builder local state kept as JSON files under a root directory."""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

_REFS_DIR = "refs"


@dataclass
class State:
    local_path: str = ""
    dockerfile_path: str = ""

    def to_json(self) -> bytes:
        return json.dumps(
            {"LocalPath": self.local_path, "DockerfilePath": self.dockerfile_path},
            separators=(",", ":"),
        ).encode()

    @classmethod
    def from_json(cls, data: bytes | str) -> "State":
        raw = json.loads(data)
        return cls(
            local_path=raw.get("LocalPath", ""),
            dockerfile_path=raw.get("DockerfilePath", ""),
        )


def _remove_all(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


class LocalState:
    """Stores build refs at <root>/refs/<builder>/<node>/<id>."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        if not str(root):
            raise ValueError("root dir empty")
        self.root = Path(root)
        (self.root / _REFS_DIR).mkdir(mode=0o700, parents=True, exist_ok=True)

    @staticmethod
    def _validate(builder_name: str, node_name: str, ref_id: str) -> None:
        if not builder_name:
            raise ValueError("builder name empty")
        if not node_name:
            raise ValueError("node name empty")
        if not ref_id:
            raise ValueError("ref ID empty")

    def read_ref(self, builder_name: str, node_name: str, ref_id: str) -> State:
        self._validate(builder_name, node_name, ref_id)
        path = self.root / _REFS_DIR / builder_name / node_name / ref_id
        return State.from_json(path.read_bytes())

    def save_ref(self, builder_name: str, node_name: str, ref_id: str, state: State) -> None:
        self._validate(builder_name, node_name, ref_id)
        ref_dir = self.root / _REFS_DIR / builder_name / node_name
        ref_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=ref_dir, prefix=f".tmp-{ref_id}")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(state.to_json())
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp, 0o600)
            os.replace(tmp, ref_dir / ref_id)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def remove_builder(self, builder_name: str) -> None:
        if not builder_name:
            raise ValueError("builder name empty")
        _remove_all(self.root / _REFS_DIR / builder_name)

    def remove_builder_node(self, builder_name: str, node_name: str) -> None:
        if not builder_name:
            raise ValueError("builder name empty")
        if not node_name:
            raise ValueError("node name empty")
        _remove_all(self.root / _REFS_DIR / builder_name / node_name)