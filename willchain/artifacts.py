"""
Artifact store: one JSON document per lifecycle stage.

Files are named `{step}_{name}.json` (e.g. `4_signed.json`) under the will
directory. Writes go to a temp file in the same directory and are renamed
into place, so a stage that dies halfway (or is abandoned) leaves either
the complete artifact or nothing.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Union

from .constants import WILL_STEP, WillType
from .errors import StageOrderError

logger = logging.getLogger("willchain.artifacts")


class ArtifactStore:

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def path(self, name: Union[str, WillType]) -> Path:
        kind = WillType(name)
        return self.root / f"{WILL_STEP[kind]}_{kind.value}.json"

    def exists(self, name: Union[str, WillType]) -> bool:
        return self.path(name).is_file()

    def write(self, name: Union[str, WillType], data: dict) -> Path:
        target = self.path(name)
        self.root.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(suffix=".json", prefix=f".{target.stem}_", dir=str(self.root))
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, target)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.info(f"Artifact written: {target.name}")
        return target

    def read(self, name: Union[str, WillType]) -> dict:
        """Required input of a stage: missing or unreadable is an ordering error."""
        target = self.path(name)
        if not target.is_file():
            raise StageOrderError(f"Required artifact {target.name} not found; run the previous stage first")
        try:
            with open(target, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StageOrderError(f"Artifact {target.name} is malformed: {e}", cause=e) from e
        if not isinstance(data, dict):
            raise StageOrderError(f"Artifact {target.name} is malformed: expected an object")
        return data

    def names(self) -> list[str]:
        return sorted(p.name for p in self.root.glob("*.json")) if self.root.is_dir() else []
