import os
import shlex
from pathlib import Path
from typing import Optional

from cellar.config.constants import WRAPPER_MODE
from cellar.errors import InstallIOError
from cellar.utils.logger import log


class WrapperService:
    """
    Writes and removes exec launchers in the shared bin directory.
    """

    @staticmethod
    def render(target: Path) -> str:
        """Launcher body for an absolute ``target``; exec keeps args, streams and exit code."""
        return f"#!/bin/bash\nexec {shlex.quote(str(target))} \"$@\"\n"

    @staticmethod
    def write(bin_dir: Path, name: str, target: Path) -> Path:
        """
        Write ``bin_dir/name`` pointing at ``target``.

        The absolute target path is computed now and baked into the script, so the
        launcher keeps working regardless of the caller's working directory.
        The file is written to a temporary name and renamed into place.
        """
        target = Path(os.path.abspath(target))
        wrapper_path = Path(bin_dir) / name
        temp_path = wrapper_path.with_name(f".{name}.tmp")

        try:
            wrapper_path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w") as f:
                f.write(WrapperService.render(target))
            os.chmod(temp_path, WRAPPER_MODE)
            os.replace(temp_path, wrapper_path)
        except OSError as e:
            try:
                temp_path.unlink()
            except OSError:
                pass
            raise InstallIOError(f"Could not write launcher {wrapper_path}: {e}") from e

        log.info(f"Wrote launcher {wrapper_path} -> {target}")
        return wrapper_path

    @staticmethod
    def remove(bin_dir: Path, name: str) -> bool:
        """
        Remove a launcher. A launcher that is already gone is logged and skipped.
        """
        wrapper_path = Path(bin_dir) / name
        try:
            wrapper_path.unlink()
        except FileNotFoundError:
            log.warning(f"Launcher {wrapper_path} was already removed")
            return False
        log.info(f"Removed launcher {wrapper_path}")
        return True

    @staticmethod
    def target_of(wrapper_path: Path) -> Optional[Path]:
        """Absolute path the launcher at ``wrapper_path`` execs, or None if it is not a launcher."""
        try:
            content = Path(wrapper_path).read_text()
        except (OSError, UnicodeDecodeError):
            return None
        for line in content.splitlines():
            if not line.startswith("exec "):
                continue
            try:
                words = shlex.split(line)
            except ValueError:
                return None
            return Path(words[1]) if len(words) > 1 else None
        return None

    @staticmethod
    def points_into(wrapper_path: Path, prefix: Path) -> bool:
        """True if the launcher at ``wrapper_path`` execs something under ``prefix``."""
        target = WrapperService.target_of(wrapper_path)
        if target is None:
            return False
        return Path(os.path.abspath(prefix)) in target.parents
