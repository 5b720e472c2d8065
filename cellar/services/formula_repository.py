"""
Formula Repository.

Locates formula YAML files by package name across the configured formula
directories and the formulas bundled with cellar.
"""

from pathlib import Path
from typing import Iterable, List, Optional

from cellar.config.constants import FORMULA_SUFFIXES
from cellar.errors import NotFoundError
from cellar.schemas.manifest import Manifest, load_manifest
from cellar.utils.logger import log

BUNDLED_FORMULA_DIR = Path(__file__).parent.parent / "formulas"


class FormulaRepository:
    """Looks up formulas by name; earlier directories take precedence."""

    def __init__(self, formula_dirs: Optional[Iterable] = None, include_bundled: bool = True):
        self.formula_dirs: List[Path] = [Path(d).expanduser() for d in (formula_dirs or [])]
        if include_bundled:
            self.formula_dirs.append(BUNDLED_FORMULA_DIR)

    def find(self, name: str) -> Optional[Path]:
        for directory in self.formula_dirs:
            for suffix in FORMULA_SUFFIXES:
                candidate = directory / f"{name}{suffix}"
                if candidate.is_file():
                    return candidate
        return None

    def load(self, name_or_path: str) -> Manifest:
        """
        Load a formula by name, or from a path when given a YAML file.

        Raises:
            NotFoundError: no formula with that name exists
            ManifestError: the formula file is invalid
        """
        if name_or_path.endswith(FORMULA_SUFFIXES):
            return load_manifest(Path(name_or_path).expanduser())

        path = self.find(name_or_path)
        if path is None:
            raise NotFoundError(f"No formula named '{name_or_path}'", stage="manifest")
        log.debug(f"Loading formula {name_or_path} from {path}")
        return load_manifest(path)

    def available(self) -> List[str]:
        """Names of every formula visible to this repository."""
        names = set()
        for directory in self.formula_dirs:
            if not directory.is_dir():
                continue
            for path in directory.iterdir():
                if path.suffix in FORMULA_SUFFIXES:
                    names.add(path.stem)
        return sorted(names)
