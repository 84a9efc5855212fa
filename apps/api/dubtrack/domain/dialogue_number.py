"""Dialogue number codec.

A dialogue number is ``project.episode.scene.line``: four dot separated decimal
components. The canonical form pads the episode and scene to two digits and the
line to three (``3.01.02.005``); parsing accepts any digit padding so that
``3.1.2.5`` addresses the same dialogue.
"""

from __future__ import annotations

from dataclasses import dataclass
import re

from dubtrack.errors import invalid_format

_COMPONENT_PATTERN = re.compile(r"[0-9]+")
_COMPONENT_NAMES = ("project", "episode", "scene", "line")


@dataclass(frozen=True, slots=True)
class DialogueNumber:
    project: int
    episode: int
    scene: int
    line: int

    @classmethod
    def parse(cls, value: str) -> DialogueNumber:
        text = str(value or "").strip()
        parts = text.split(".")
        if len(parts) != len(_COMPONENT_NAMES) or not all(_COMPONENT_PATTERN.fullmatch(part) for part in parts):
            raise invalid_format(
                "Dialogue number must have exactly four numeric components",
                details={"dialogue_number": text, "expected": "project.episode.scene.line"},
            )

        numbers = [int(part) for part in parts]
        for name, number in zip(_COMPONENT_NAMES, numbers):
            if number < 1:
                raise invalid_format(
                    f"Dialogue number {name} component must be positive",
                    details={"dialogue_number": text, "component": name},
                )
        return cls(*numbers)

    @property
    def episode_suffix(self) -> str:
        return f"{self.episode:02d}"

    def format(self) -> str:
        return f"{self.project}.{self.episode:02d}.{self.scene:02d}.{self.line:03d}"

    def __str__(self) -> str:
        return self.format()


def canonical_dialogue_number(value: str) -> str:
    return DialogueNumber.parse(value).format()


__all__ = ["DialogueNumber", "canonical_dialogue_number"]
