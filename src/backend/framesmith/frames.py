"""
Frame containers.

A Frame is one BGR uint8 image (OpenCV layout), either held in memory or referenced
by a file path and decoded on every access. Path-backed frames are deliberately not
cached: callers that need the pixels more than once should ``materialize()``.

FrameSequence keeps frames in temporal order (insertion order) plus optional
provenance metadata. Pipeline stages never mutate a sequence they receive; they
return new ones.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from framesmith.services.assembly_errors import FrameLoadError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Frame:
    """A single image, in memory or on disk."""
    image: Optional[np.ndarray] = None
    path: Optional[Path] = None

    def __post_init__(self):
        if (self.image is None) == (self.path is None):
            raise ValueError("Frame needs exactly one of image or path")
        if self.path is not None:
            object.__setattr__(self, "path", Path(self.path))

    @classmethod
    def from_image(cls, image: np.ndarray) -> "Frame":
        return cls(image=image)

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "Frame":
        return cls(path=Path(path))

    @property
    def is_loaded(self) -> bool:
        return self.image is not None

    def load(self, index: Optional[int] = None) -> np.ndarray:
        """
        Return the pixels, reading the file again for path-backed frames.

        Raises:
            FrameLoadError: If the file is missing or not a decodable image
        """
        if self.image is not None:
            return self.image
        image = cv2.imread(str(self.path), cv2.IMREAD_COLOR)
        if image is None:
            raise FrameLoadError(self.path, frame_index=index)
        return image

    def materialize(self, index: Optional[int] = None) -> "Frame":
        """Return an in-memory copy of this frame."""
        if self.image is not None:
            return self
        return Frame(image=self.load(index))

    def size(self, index: Optional[int] = None) -> Tuple[int, int]:
        """(width, height) of the frame."""
        height, width = self.load(index).shape[:2]
        return width, height


@dataclass
class FrameCollectionMetadata:
    """Descriptive provenance for a frame sequence. Never affects processing."""
    source_job_id: Optional[str] = None
    prompt: Optional[str] = None
    negative_prompt: Optional[str] = None
    model: Optional[str] = None
    seed: Optional[int] = None
    generated_at: Optional[datetime] = None
    custom: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "source_job_id": self.source_job_id,
            "prompt": self.prompt,
            "negative_prompt": self.negative_prompt,
            "model": self.model,
            "seed": self.seed,
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
            "custom": dict(self.custom),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FrameCollectionMetadata":
        generated_at = data.get("generated_at")
        return cls(
            source_job_id=data.get("source_job_id"),
            prompt=data.get("prompt"),
            negative_prompt=data.get("negative_prompt"),
            model=data.get("model"),
            seed=data.get("seed"),
            generated_at=datetime.fromisoformat(generated_at) if generated_at else None,
            custom=dict(data.get("custom") or {}),
        )


class FrameSequence:
    """
    Ordered collection of frames with metadata.

    Example:
        sequence = FrameSequence.from_paths(sorted(Path("out").glob("*.png")))
        sequence.append_image(extra_frame)
        first = sequence.load(0)
    """

    def __init__(
        self,
        frames: Optional[Iterable[Frame]] = None,
        metadata: Optional[FrameCollectionMetadata] = None
    ):
        self._frames: List[Frame] = list(frames or [])
        self.metadata = metadata if metadata is not None else FrameCollectionMetadata()

    @classmethod
    def from_paths(cls, paths: Iterable[Union[str, Path]], metadata: Optional[FrameCollectionMetadata] = None) -> "FrameSequence":
        return cls([Frame.from_path(p) for p in paths], metadata)

    @classmethod
    def from_images(cls, images: Iterable[np.ndarray], metadata: Optional[FrameCollectionMetadata] = None) -> "FrameSequence":
        return cls([Frame.from_image(img) for img in images], metadata)

    def __len__(self) -> int:
        return len(self._frames)

    def __iter__(self) -> Iterator[Frame]:
        return iter(self._frames)

    def __getitem__(self, index: int) -> Frame:
        return self._frames[index]

    @property
    def frames(self) -> List[Frame]:
        return list(self._frames)

    @property
    def is_empty(self) -> bool:
        return not self._frames

    def load(self, index: int) -> np.ndarray:
        """Pixels of the frame at index (re-read from disk for path frames)."""
        return self._frames[index].load(index)

    def first_size(self) -> Tuple[int, int]:
        """(width, height) of the first frame."""
        return self._frames[0].size(0)

    # Mutation --------------------------------------------------------------

    def append(self, frame: Frame) -> None:
        self._frames.append(frame)

    def append_path(self, path: Union[str, Path]) -> None:
        self._frames.append(Frame.from_path(path))

    def append_image(self, image: np.ndarray) -> None:
        self._frames.append(Frame.from_image(image))

    def extend(self, other: "FrameSequence") -> None:
        self._frames.extend(other._frames)

    def remove(self, indices: Sequence[int]) -> None:
        """Remove frames at the given indices (order of indices does not matter)."""
        drop = set(indices)
        self._frames = [f for i, f in enumerate(self._frames) if i not in drop]

    def clear(self) -> None:
        self._frames.clear()
        self.metadata = FrameCollectionMetadata()

    # Derivation ------------------------------------------------------------

    def copy(self) -> "FrameSequence":
        return FrameSequence(self._frames, replace(self.metadata, custom=dict(self.metadata.custom)))

    def derive(self, frames: Iterable[Frame]) -> "FrameSequence":
        """New sequence with different frames and a copy of this metadata."""
        return FrameSequence(frames, replace(self.metadata, custom=dict(self.metadata.custom)))
