"""Checksum-verified media download with an on-disk cache."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Optional, Sequence
from urllib.parse import urlparse
from urllib.request import url2pathname

from xenbuilder.constants import CACHE_DIR, CHECKSUM_NONE
from xenbuilder.exceptions import BuildError, CancellationError
from xenbuilder.pipeline import Step, StepAction
from xenbuilder.state import BuildState, StateKey
from xenbuilder.utils import download_file, ensure_directory, file_checksum


class DownloadCache:
    """Directory of downloaded media, one file per URL and checksum."""

    def __init__(self, directory: Optional[Path] = None) -> None:
        self.directory = Path(directory) if directory is not None else CACHE_DIR

    def path_for(self, url: str, checksum: str = "") -> Path:
        ensure_directory(self.directory)
        digest = hashlib.sha1(f"{url}|{checksum}".encode("utf-8")).hexdigest()
        suffix = Path(urlparse(url).path).suffix
        return self.directory / f"{digest}{suffix}"


class StepDownload(Step):
    name = "download"

    def __init__(
        self,
        urls: Sequence[str],
        checksum: str,
        checksum_type: str,
        description: str,
        result_key: StateKey = StateKey.ISO_PATH,
    ) -> None:
        self.urls = list(urls)
        self.checksum = checksum.lower()
        self.checksum_type = checksum_type.lower()
        self.description = description
        self.result_key = result_key

    def run(self, state: BuildState) -> StepAction:
        ui = state.ui
        token = state.cancel_token
        cache = state.get(StateKey.CACHE) or DownloadCache()

        ui.say(f"Retrieving {self.description}")
        for url in self.urls:
            if token.cancelled:
                return StepAction.HALT
            parsed = urlparse(url)
            if parsed.scheme == "file":
                path = Path(url2pathname(parsed.path))
                if self._verify(path, ui):
                    ui.say(f"Using local {self.description}: {path}")
                    state.put(self.result_key, str(path))
                    return StepAction.CONTINUE
                continue

            target = cache.path_for(url, self.checksum)
            if target.exists() and self._verify(target, ui):
                ui.say(f"Using cached {self.description}: {target}")
                state.put(self.result_key, str(target))
                return StepAction.CONTINUE

            try:
                download_file(url, target, label=f"Downloading {self.description}", should_stop=lambda: token.cancelled)
            except CancellationError:
                ui.say(f"Download of {self.description} interrupted")
                return StepAction.HALT
            except BuildError as exc:
                ui.warn(str(exc))
                continue

            if self._verify(target, ui):
                state.put(self.result_key, str(target))
                return StepAction.CONTINUE
            target.unlink(missing_ok=True)

        return self.fail(state, f"Error downloading {self.description}: no URL produced a valid file")

    def _verify(self, path: Path, ui) -> bool:
        if not path.is_file():
            ui.warn(f"{path} does not exist")
            return False
        if self.checksum_type == CHECKSUM_NONE:
            return True
        actual = file_checksum(path, self.checksum_type)
        if actual != self.checksum:
            ui.warn(f"Checksum mismatch for {path}: expected {self.checksum}, got {actual}")
            return False
        return True
