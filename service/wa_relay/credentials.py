"""File-backed multi-file auth state for the linked WhatsApp device."""
from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
from pathlib import Path
from typing import Any, Dict, Protocol

logger = logging.getLogger(__name__)

CREDS_FILE = "creds.json"
_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]")


class CredentialStore(Protocol):
    async def exists(self) -> bool: ...

    async def load(self) -> Dict[str, Any]: ...

    async def save(self, files: Dict[str, Any]) -> None: ...

    async def purge(self) -> None: ...


class FileCredentialStore:
    """One JSON file per key, the layout Baileys' ``useMultiFileAuthState`` uses.

    File work is pushed to a worker thread so the event loop never blocks.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory).expanduser()

    @staticmethod
    def _file_name(name: str) -> str:
        cleaned = _SAFE_NAME.sub("-", name.replace("/", "__").replace(":", "-"))
        if not cleaned or cleaned in {".", ".."}:
            raise ValueError(f"Invalid credential file name: {name!r}")
        return cleaned if cleaned.endswith(".json") else f"{cleaned}.json"

    async def exists(self) -> bool:
        return await asyncio.to_thread((self.directory / CREDS_FILE).is_file)

    async def load(self) -> Dict[str, Any]:
        def _read_files() -> Dict[str, Any]:
            if not self.directory.is_dir():
                return {}
            files: Dict[str, Any] = {}
            for path in sorted(self.directory.glob("*.json")):
                try:
                    files[path.name] = json.loads(path.read_text(encoding="utf-8"))
                except (OSError, json.JSONDecodeError) as exc:
                    logger.warning("Skipping unreadable credential file %s: %s", path.name, exc)
            return files

        files = await asyncio.to_thread(_read_files)
        logger.debug("Loaded %d credential file(s) from %s", len(files), self.directory)
        return files

    async def save(self, files: Dict[str, Any]) -> None:
        if not files:
            return

        def _write_files() -> None:
            self.directory.mkdir(parents=True, exist_ok=True)
            for name, data in files.items():
                path = self.directory / self._file_name(name)
                if data is None:
                    path.unlink(missing_ok=True)
                    continue
                tmp = path.with_suffix(".tmp")
                tmp.write_text(json.dumps(data), encoding="utf-8")
                tmp.replace(path)

        await asyncio.to_thread(_write_files)
        logger.debug("Saved %d credential file(s)", len(files))

    async def purge(self) -> None:
        def _clear() -> None:
            if self.directory.exists():
                shutil.rmtree(self.directory, ignore_errors=True)
            self.directory.mkdir(parents=True, exist_ok=True)

        await asyncio.to_thread(_clear)
        logger.warning("Credential store purged (%s)", self.directory)


__all__ = ["CREDS_FILE", "CredentialStore", "FileCredentialStore"]
