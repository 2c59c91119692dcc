"""Registry of the segments defined in one segmentation."""

from __future__ import annotations

import colorsys
import logging
from dataclasses import fields, replace
from typing import Iterator

from .SegmentationDataStructures import Segment
from .SegmentationErrors import ConfigurationError

logger = logging.getLogger(__name__)

GOLDEN_ANGLE_DEGREES = 137.508


def segment_color(index: int) -> tuple[int, int, int]:
    """Distinct display colour for a segment index.

    Hues step around the colour wheel by the golden angle so neighbouring
    indices get well separated colours.
    """
    hue = (index * GOLDEN_ANGLE_DEGREES) % 360
    r, g, b = colorsys.hsv_to_rgb(hue / 360, 0.7, 0.9)
    return (round(r * 255), round(g * 255), round(b * 255))


class SegmentRegistry:
    """Segments keyed by their index. Index 0 is reserved for background."""

    def __init__(self):
        self._segments: dict[int, Segment] = {}

    def __len__(self) -> int:
        return len(self._segments)

    def __contains__(self, segment_index: int) -> bool:
        return segment_index in self._segments

    def __iter__(self) -> Iterator[Segment]:
        return iter(sorted(self._segments.values(), key=lambda s: s.segment_index))

    def indices(self) -> list[int]:
        return sorted(self._segments)

    def locked_indices(self) -> list[int]:
        return sorted(i for i, s in self._segments.items() if s.locked)

    def next_index(self) -> int:
        """Lowest positive index not yet in use."""
        index = 1
        while index in self._segments:
            index += 1
        return index

    def get(self, segment_index: int) -> Segment:
        """Return a segment.

        Raises:
            ConfigurationError: If no segment has this index.
        """
        try:
            return self._segments[segment_index]
        except KeyError:
            raise ConfigurationError(f"Segment {segment_index} not found") from None

    def add(
        self,
        segment_index: int | None = None,
        label: str | None = None,
        color: tuple[int, int, int] | None = None,
        opacity: float = 0.5,
        visible: bool = True,
        locked: bool = False,
        category: str | None = None,
        description: str | None = None,
    ) -> Segment:
        """Register a new segment, filling in index, label and colour defaults.

        Raises:
            ConfigurationError: If the index is taken or a property is invalid.
        """
        if segment_index is None:
            segment_index = self.next_index()
        if segment_index in self._segments:
            raise ConfigurationError(f"Segment with index {segment_index} already exists")

        segment = Segment(
            segment_index=segment_index,
            label=label or f"Segment {segment_index}",
            color=tuple(color) if color is not None else segment_color(segment_index),
            opacity=opacity,
            visible=visible,
            locked=locked,
            category=category,
            description=description,
        )
        errors = segment.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))

        self._segments[segment_index] = segment
        logger.debug(f"Registered segment {segment_index} '{segment.label}'")
        return segment

    def update(self, segment_index: int, /, **changes) -> Segment:
        """Change properties of a segment. The index itself cannot change."""
        segment = self.get(segment_index)
        allowed = {f.name for f in fields(Segment)} - {"segment_index"}
        unknown = set(changes) - allowed
        if unknown:
            raise ConfigurationError(f"Cannot update segment fields: {', '.join(sorted(unknown))}")
        if "color" in changes:
            changes["color"] = tuple(changes["color"])

        updated = replace(segment, **changes)
        errors = updated.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))

        self._segments[segment_index] = updated
        return updated

    def remove(self, segment_index: int) -> Segment:
        segment = self.get(segment_index)
        del self._segments[segment_index]
        return segment
