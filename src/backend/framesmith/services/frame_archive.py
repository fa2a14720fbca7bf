"""
Frame Archive - Directory-based save/load of a raw frame sequence.

Layout:
    <directory>/
        manifest.json
        frame_000000.png
        frame_000001.png
        ...

The manifest records the format version, when the archive was written, the image
format, the frame count, the ordered frame file names and the sequence metadata.
Loading returns path-backed frames, so nothing is decoded until a stage needs it.

USAGE:
    from framesmith.services.frame_archive import save_sequence, load_sequence

    manifest_path = save_sequence(sequence, Path("archives/job-42"))
    restored = load_sequence(Path("archives/job-42"))
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

import cv2

from framesmith.frames import FrameCollectionMetadata, FrameSequence
from framesmith.services.assembly_errors import AssemblyError, FrameArchiveError

logger = logging.getLogger(__name__)

ARCHIVE_VERSION = 1
MANIFEST_NAME = "manifest.json"
SUPPORTED_FORMATS = ("png", "jpg", "webp")


def frame_filename(index: int, image_format: str) -> str:
    return f"frame_{index:06d}.{image_format}"


def save_sequence(sequence: FrameSequence, directory: Path, image_format: str = "png") -> Path:
    """
    Write every frame plus a manifest into directory.

    Returns:
        Path to manifest.json

    Raises:
        FrameArchiveError: If the format is unsupported or a file cannot be written
    """
    directory = Path(directory)
    image_format = image_format.lower().lstrip(".")
    if image_format not in SUPPORTED_FORMATS:
        raise FrameArchiveError(f"Unsupported archive image format: {image_format}", directory)

    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FrameArchiveError(f"Could not create archive directory: {e}", directory)

    names = []
    for i in range(len(sequence)):
        name = frame_filename(i, image_format)
        try:
            image = sequence.load(i)
        except AssemblyError as e:
            raise FrameArchiveError(f"Could not read frame {i}: {e}", directory)
        if not cv2.imwrite(str(directory / name), image):
            raise FrameArchiveError(f"Could not write {name}", directory)
        names.append(name)

    manifest = {
        "version": ARCHIVE_VERSION,
        "archived_at": datetime.now(timezone.utc).isoformat(),
        "format": image_format,
        "frame_count": len(names),
        "frames": names,
        "metadata": sequence.metadata.to_dict(),
    }
    manifest_path = directory / MANIFEST_NAME
    with open(manifest_path, 'w') as f:
        json.dump(manifest, f, indent=2)

    logger.info(f"Archived {len(names)} frames to {directory}")
    return manifest_path


def load_sequence(directory: Path) -> FrameSequence:
    """
    Restore a sequence saved by save_sequence.

    Raises:
        FrameArchiveError: Missing/invalid manifest, unsupported version or missing frame file
    """
    directory = Path(directory)
    manifest_path = directory / MANIFEST_NAME
    if not manifest_path.is_file():
        raise FrameArchiveError(f"No {MANIFEST_NAME} in {directory}", directory)

    try:
        with open(manifest_path) as f:
            manifest = json.load(f)
    except json.JSONDecodeError as e:
        raise FrameArchiveError(f"Invalid manifest: {e}", directory)

    version = manifest.get("version")
    if version != ARCHIVE_VERSION:
        raise FrameArchiveError(f"Unsupported archive version: {version}", directory)

    names = manifest.get("frames") or []
    if manifest.get("frame_count", len(names)) != len(names):
        raise FrameArchiveError(
            f"Manifest lists {len(names)} frames but frame_count is {manifest.get('frame_count')}",
            directory,
        )

    paths = []
    for name in names:
        path = directory / name
        if not path.is_file():
            raise FrameArchiveError(f"Missing frame file: {name}", directory)
        paths.append(path)

    metadata = FrameCollectionMetadata.from_dict(manifest.get("metadata") or {})
    logger.info(f"Loaded {len(paths)} frames from {directory}")
    return FrameSequence.from_paths(paths, metadata)
