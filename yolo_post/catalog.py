from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterator, Sequence, Tuple, Union

from .errors import CatalogMismatch


logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def parse_labels(text: str) -> Tuple[str, ...]:
    """
    One label per line, line i -> class i.

    A final newline terminates the last label rather than starting a new one,
    so "a\\nb\\n" is two labels while "a\\nb\\n\\n" keeps a trailing empty label.
    Windows line endings are tolerated.
    """

    if not text:
        return ()
    lines = text.split("\n")
    if text.endswith("\n"):
        lines.pop()
    return tuple(line[:-1] if line.endswith("\r") else line for line in lines)


def parse_metadata_names(text: str) -> Dict[int, str]:
    """
    Parse the lightweight `metadata.yaml` format:

        names:
          0: person
          1: bicycle
    """

    names: Dict[int, str] = {}
    in_names = False
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line == "names:":
            in_names = True
            continue
        if not in_names:
            continue

        if ":" not in line:
            continue
        left, right = line.split(":", 1)
        left = left.strip()
        right = right.strip().strip("'").strip('"')
        if not left.isdigit():
            continue
        names[int(left)] = right

    return names


class ClassCatalog:
    """
    Ordered, read-only class labels; index == class_id.
    """

    def __init__(self, labels: Sequence[str]):
        self._labels = tuple(str(label) for label in labels)

    def __len__(self) -> int:
        return len(self._labels)

    def __iter__(self) -> Iterator[str]:
        return iter(self._labels)

    def __getitem__(self, class_id: int) -> str:
        return self._labels[class_id]

    def __repr__(self) -> str:
        return f"ClassCatalog({len(self._labels)} labels)"

    @property
    def labels(self) -> Tuple[str, ...]:
        return self._labels

    @property
    def num_classes(self) -> int:
        return len(self._labels)

    def name(self, class_id: int) -> str:
        """Label for `class_id`, or the id as text when it is out of range."""
        if 0 <= class_id < len(self._labels):
            return self._labels[class_id]
        return str(class_id)

    def as_dict(self) -> Dict[int, str]:
        return dict(enumerate(self._labels))

    def validate(self, num_classes: int) -> None:
        if num_classes != len(self._labels):
            raise CatalogMismatch(
                f"Model predicts {num_classes} classes but the catalog has {len(self._labels)} labels."
            )

    @classmethod
    def from_text(cls, text: str) -> "ClassCatalog":
        return cls(parse_labels(text))

    @classmethod
    def from_names(cls, names: Dict[int, str]) -> "ClassCatalog":
        """Build from an {id: name} mapping; ids must be 0..N-1 without gaps."""
        ids = sorted(names)
        if ids != list(range(len(ids))):
            raise CatalogMismatch(f"Class ids must be contiguous from 0, got {ids[:10]}...")
        return cls([names[i] for i in ids])


def load_catalog(path: PathLike) -> ClassCatalog:
    """
    Load labels from a `.txt` file (one per line) or a `metadata.yaml` names mapping.
    """

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Label file not found: {path}")
    text = path.read_text(encoding="utf-8")

    if path.suffix.lower() in {".yaml", ".yml"}:
        catalog = ClassCatalog.from_names(parse_metadata_names(text))
    else:
        catalog = ClassCatalog.from_text(text)

    logger.info("Loaded %d class names from %s", len(catalog), path)
    return catalog
