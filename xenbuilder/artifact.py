"""Build artifact describing the exported image."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, Tuple, Union

from xenbuilder.exceptions import ArtifactError
from xenbuilder.utils import log


@dataclass(frozen=True)
class Artifact:
    BUILDER_ID: ClassVar[str] = "xenbuilder.xenserver"

    directory: Path
    files: Tuple[Path, ...]

    @property
    def builder_id(self) -> str:
        return self.BUILDER_ID

    @property
    def id(self) -> str:
        return "VM"

    def __str__(self) -> str:
        return f"VM files in directory: {self.directory}"

    def destroy(self) -> None:
        log("INFO", f"Deleting artifact directory {self.directory}")
        shutil.rmtree(self.directory)


def produce_artifact(directory: Union[str, Path]) -> Artifact:
    """Describe the exported image in ``directory``."""
    path = Path(directory)
    if not path.is_dir():
        raise ArtifactError(f"Output directory {path} does not exist")
    files = tuple(sorted(item for item in path.rglob("*") if item.is_file()))
    if not files:
        raise ArtifactError(f"Output directory {path} contains no exported files")
    return Artifact(directory=path, files=files)
