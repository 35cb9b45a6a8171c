from __future__ import annotations

from .store import Attachment, AttachmentSandbox, augment_prompt, decode_data_uri

__all__ = [
    "Attachment",
    "AttachmentSandbox",
    "augment_prompt",
    "decode_data_uri",
]
