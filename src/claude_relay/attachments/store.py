from __future__ import annotations

import base64
import binascii
import logging
import re
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from claude_relay.errors import AttachmentFailure, AttachmentIOError, TeardownFailure

log = logging.getLogger("relay.attachments")

SANDBOX_SUBDIR = Path(".tmp") / "images"


@dataclass(frozen=True)
class Attachment:
    index: int
    mime: str
    local_path: str
    size_bytes: int


_IMAGE_EXT_BY_MIME: dict[str, str] = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/bmp": "bmp",
    "image/tiff": "tiff",
}

_DATA_URI_RE = re.compile(r"^data:([^;,]+);base64,(.+)$", re.DOTALL)


def _guess_ext(mime: str) -> str:
    if mime in _IMAGE_EXT_BY_MIME:
        return _IMAGE_EXT_BY_MIME[mime]
    subtype = mime.split("/", 1)[1] if "/" in mime else ""
    subtype = re.sub(r"[^a-z0-9]+", "", subtype.lower())
    return subtype[:8] or "png"


def _raw_data(item: object) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        data = item.get("data")
        if isinstance(data, str):
            return data
    return ""


def decode_data_uri(index: int, item: object) -> tuple[str, bytes]:
    """Return (mime, payload) for a `data:<mime>;base64,<payload>` attachment."""
    match = _DATA_URI_RE.match(_raw_data(item).strip())
    if not match:
        raise AttachmentFailure(index, "not a base64 data URI")
    mime, encoded = match.group(1).strip().lower(), match.group(2)
    try:
        payload = base64.b64decode(encoded)
    except (binascii.Error, ValueError) as e:
        raise AttachmentFailure(index, f"invalid base64 payload ({e})") from e
    if not payload:
        raise AttachmentFailure(index, "empty payload")
    return mime, payload


def augment_prompt(command: str, attachments: list[Attachment]) -> str:
    """Append the materialised attachment paths to the prompt."""
    if not attachments or not (command or "").strip():
        return command
    listing = "\n".join(f"{i}. {a.local_path}" for i, a in enumerate(attachments, 1))
    return f"{command}\n\n[Images provided at the following paths:]\n{listing}"


class AttachmentSandbox:
    """Private scratch directory holding one unit's materialised attachments."""

    def __init__(self, root: Path | None = None):
        self.root = root

    def base_for(self, working_dir: str) -> Path:
        if self.root is not None:
            return self.root
        return Path(working_dir) / SANDBOX_SUBDIR

    def acquire(
        self, base_dir: Path, attachments: Iterable[object]
    ) -> tuple[Path, list[Attachment]]:
        """Create a sandbox under base_dir and write every decodable attachment.

        Malformed attachments are logged and skipped. Raises AttachmentIOError
        when the directory itself cannot be created.
        """
        ts = int(time.time() * 1000)
        sandbox = Path(base_dir) / f"{ts}-{uuid.uuid4().hex[:6]}"
        try:
            sandbox.mkdir(parents=True, exist_ok=False)
        except OSError as e:
            raise AttachmentIOError(f"Cannot create sandbox {sandbox}: {e}") from e

        out: list[Attachment] = []
        for index, item in enumerate(attachments):
            try:
                mime, payload = decode_data_uri(index, item)
            except AttachmentFailure as e:
                log.warning(str(e))
                continue

            path = sandbox / f"image_{index}.{_guess_ext(mime)}"
            try:
                path.write_bytes(payload)
            except OSError as e:
                log.warning(f"Attachment #{index} skipped: write failed ({e})")
                continue
            out.append(
                Attachment(
                    index=index,
                    mime=mime,
                    local_path=str(path),
                    size_bytes=len(payload),
                )
            )

        log.info(f"Sandbox {sandbox}: {len(out)} attachment(s)")
        return sandbox, out

    def release(self, sandbox: Path | None) -> None:
        """Delete the sandbox. Idempotent; a missing directory is not an error.

        Raises TeardownFailure when the directory exists but cannot be removed.
        """
        if sandbox is None:
            return
        try:
            shutil.rmtree(sandbox)
        except FileNotFoundError:
            return
        except OSError as e:
            raise TeardownFailure(f"Error cleaning up sandbox {sandbox}: {e}") from e
        log.info(f"Cleaned up sandbox {sandbox}")
