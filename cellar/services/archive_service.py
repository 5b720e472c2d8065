import os
import shutil
import stat
import tarfile
import tempfile
import zipfile
import zlib
import lzma
from pathlib import Path, PurePosixPath

from cellar.config.constants import STAGING_PREFIX
from cellar.errors import FormatError, InstallIOError
from cellar.utils.logger import log


def _is_unsafe(member_name: str) -> bool:
    path = PurePosixPath(member_name)
    return path.is_absolute() or ".." in path.parts


class ArchiveService:
    """
    Unpacks source archives into temporary staging directories.
    """

    @staticmethod
    def make_staging_dir(staging_root: Path, label: str = "extract") -> Path:
        try:
            staging_root.mkdir(parents=True, exist_ok=True)
            return Path(tempfile.mkdtemp(prefix=f"{STAGING_PREFIX}{label}-", dir=staging_root))
        except OSError as e:
            raise InstallIOError(f"Cannot create staging directory in {staging_root}: {e}") from e

    @staticmethod
    def extract(archive_path: Path, staging_root: Path) -> Path:
        """
        Unpack ``archive_path`` into a new directory under ``staging_root``.

        Supports tar (plain, gz, bz2, xz) and zip. Permission bits are kept
        so bundled executables stay executable. The staging directory is
        removed again if unpacking fails.

        Raises:
            FormatError: unknown type, corrupt data, or a member escaping the staging directory
        """
        archive_path = Path(archive_path)
        if not archive_path.is_file():
            raise FormatError(f"Archive not found: {archive_path}")

        staging = ArchiveService.make_staging_dir(staging_root)
        try:
            if tarfile.is_tarfile(archive_path):
                ArchiveService._extract_tar(archive_path, staging)
            elif zipfile.is_zipfile(archive_path):
                ArchiveService._extract_zip(archive_path, staging)
            else:
                raise FormatError(f"Unrecognized archive format: {archive_path.name}")
        except FormatError:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        except (tarfile.TarError, zipfile.BadZipFile, EOFError, zlib.error, lzma.LZMAError) as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise FormatError(f"Corrupt archive {archive_path.name}: {e}") from e
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise InstallIOError(f"Cannot unpack {archive_path.name}: {e}", stage="extract") from e

        log.info(f"Extracted {archive_path.name} into {staging}")
        return staging

    @staticmethod
    def _extract_tar(archive_path: Path, staging: Path):
        with tarfile.open(archive_path, "r:*") as tar:
            try:
                # Listing members reads the whole stream, so corrupt data surfaces here
                members = tar.getmembers()
            except (tarfile.TarError, EOFError, OSError, zlib.error, lzma.LZMAError) as e:
                raise FormatError(f"Corrupt archive {archive_path.name}: {e}") from e

            for member in members:
                if _is_unsafe(member.name):
                    raise FormatError(f"Refusing to extract unsafe path: {member.name}")
                if member.islnk() and _is_unsafe(member.linkname):
                    raise FormatError(f"Refusing to extract unsafe link: {member.name} -> {member.linkname}")
                if member.isdev():
                    raise FormatError(f"Refusing to extract device file: {member.name}")

            if hasattr(tarfile, "tar_filter"):
                tar.extractall(staging, members=members, filter="tar")
            else:
                tar.extractall(staging, members=members)

    @staticmethod
    def _extract_zip(archive_path: Path, staging: Path):
        with zipfile.ZipFile(archive_path) as zf:
            bad = zf.testzip()
            if bad is not None:
                raise FormatError(f"Corrupt member in {archive_path.name}: {bad}")

            for info in zf.infolist():
                if _is_unsafe(info.filename):
                    raise FormatError(f"Refusing to extract unsafe path: {info.filename}")

            for info in zf.infolist():
                # Upper 16 bits of external_attr hold the Unix mode
                unix_mode = info.external_attr >> 16
                if stat.S_ISLNK(unix_mode):
                    ArchiveService._extract_zip_symlink(zf, info, staging)
                    continue
                extracted = zf.extract(info, staging)
                mode = unix_mode & 0o7777
                if mode and not info.is_dir():
                    os.chmod(extracted, mode & ~(stat.S_ISUID | stat.S_ISGID))

    @staticmethod
    def _extract_zip_symlink(zf: zipfile.ZipFile, info: zipfile.ZipInfo, staging: Path):
        """Recreate a symlink entry; its data is the link target."""
        try:
            link_target = zf.read(info).decode("utf-8")
        except UnicodeDecodeError as e:
            raise FormatError(f"Unreadable link target for {info.filename}") from e
        resolved = os.path.normpath(os.path.join(os.path.dirname(info.filename.rstrip("/")), link_target))
        if os.path.isabs(link_target) or resolved == ".." or resolved.startswith(".." + os.sep):
            raise FormatError(f"Refusing to extract unsafe link: {info.filename} -> {link_target}")

        link_path = staging / info.filename.rstrip("/")
        link_path.parent.mkdir(parents=True, exist_ok=True)
        if os.path.lexists(link_path):
            link_path.unlink()
        os.symlink(link_target, link_path)

    @staticmethod
    def source_root(staging: Path) -> Path:
        """
        Directory install actions resolve paths against.

        Archives that wrap everything in a single top-level directory are
        entered, the way source tarballs are usually laid out.
        """
        entries = [p for p in staging.iterdir() if not p.name.startswith(".")]
        if len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
            return entries[0]
        return staging
