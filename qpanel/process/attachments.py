"""Staging of inline image attachments for the Q CLI.

The client sends images as ``data:<mime>;base64,<payload>`` URLs. The CLI can
only reference files, so each image is decoded into a per-run directory under
the project (``<cwd>/.tmp/images/<unique>/``) and its path is appended to the
prompt. The directory belongs to the run and is removed when the run ends.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path

from qpanel.core.models import ImageAttachment

logger = logging.getLogger(__name__)

DATA_URL_PATTERN = re.compile(r"^data:([^;,]*);base64,(.+)$", re.DOTALL)

DEFAULT_EXTENSION = "png"

# Subtypes whose name is not a usable file extension
_MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/pjpeg": "jpg",
    "image/svg+xml": "svg",
    "image/x-icon": "ico",
    "image/vnd.microsoft.icon": "ico",
    "image/tiff": "tif",
}

_SUBTYPE_PATTERN = re.compile(r"^[a-z0-9]+$")

IMAGE_NOTE_HEADER = "[Images provided at the following paths:]"


class MalformedAttachmentError(ValueError):
    """Attachment payload is not a decodable base64 data URL."""

    pass


def extension_for_mime(mime_type: str | None) -> str:
    """Pick a file extension for a MIME type, defaulting to ``png``."""
    if not mime_type:
        return DEFAULT_EXTENSION
    mime = mime_type.strip().lower()
    if mime in _MIME_EXTENSIONS:
        return _MIME_EXTENSIONS[mime]
    _, _, subtype = mime.partition("/")
    if subtype and _SUBTYPE_PATTERN.match(subtype):
        return subtype
    return DEFAULT_EXTENSION


def decode_data_url(attachment: ImageAttachment) -> tuple[str | None, bytes]:
    """Split a data URL into (mime type, raw bytes).

    The MIME type embedded in the URL wins over the separately declared one.

    Raises:
        MalformedAttachmentError: If the URL shape or base64 payload is invalid.
    """
    match = DATA_URL_PATTERN.match(attachment.data or "")
    if not match:
        raise MalformedAttachmentError("Invalid image data format (expected base64 data URL)")

    mime_type = match.group(1) or attachment.mime_type
    payload = "".join(match.group(2).split())
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedAttachmentError(f"Invalid base64 image payload: {e}") from e
    return mime_type, raw


@dataclass
class StagedAttachments:
    """Files written for one run and the directory that holds them."""

    directory: Path | None = None
    paths: list[Path] = field(default_factory=list)

    def cleanup(self) -> None:
        """Remove the staging directory. Failures are logged, never raised."""
        if self.directory is None:
            return
        directory, self.directory = self.directory, None
        try:
            shutil.rmtree(directory)
            logger.debug(f"Removed staging directory {directory}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Error cleaning up temp images in {directory}: {e}")


def stage_attachments(
    images: list[ImageAttachment],
    workdir: Path,
    staging_subdir: str = ".tmp/images",
) -> StagedAttachments:
    """Decode images into a fresh directory under ``workdir``.

    Malformed entries and per-file write errors are logged and skipped; they
    never abort the run. A failure to create the directory yields no staged
    files.
    """
    staged = StagedAttachments()
    if not images:
        return staged

    base = workdir / staging_subdir
    try:
        base.mkdir(parents=True, exist_ok=True)
        staged.directory = Path(
            tempfile.mkdtemp(prefix=f"{int(time.time() * 1000)}-", dir=base)
        )
    except OSError as e:
        logger.error(f"Error creating image staging directory under {base}: {e}")
        return staged

    for index, image in enumerate(images):
        try:
            mime_type, raw = decode_data_url(image)
        except MalformedAttachmentError as e:
            logger.warning(f"Skipping image {index}: {e}")
            continue

        filepath = staged.directory / f"image_{index}.{extension_for_mime(mime_type)}"
        try:
            filepath.write_bytes(raw)
        except OSError as e:
            logger.error(f"Error writing image {index} to {filepath}: {e}")
            continue
        staged.paths.append(filepath)

    logger.info(f"Staged {len(staged.paths)} of {len(images)} image(s) in {staged.directory}")
    return staged


def augment_prompt(prompt: str, paths: list[Path]) -> str:
    """Append a numbered list of staged image paths to a non-empty prompt."""
    if not paths or not prompt.strip():
        return prompt
    listing = "\n".join(f"{i}. {p}" for i, p in enumerate(paths, start=1))
    return f"{prompt}\n\n{IMAGE_NOTE_HEADER}\n{listing}"
