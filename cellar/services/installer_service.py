"""
Installer Service.

Runs the fetch -> verify -> extract -> install pipeline for a formula,
places each version into its own prefix with a single rename, and manages
which installed version's launchers are live in the shared bin directory.
"""

import os
import shutil
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from cellar.config.constants import DEFAULT_FETCH_WORKERS
from cellar.config.manager import CellarLayout, config_manager
from cellar.errors import CellarError, InstallIOError, IntegrityError, NotFoundError
from cellar.schemas.manifest import CopyIntoPrefix, InstalledPackage, Manifest, WriteExecutableWrapper
from cellar.services.archive_service import ArchiveService
from cellar.services.database.engine import DatabaseManager
from cellar.services.download_service import DownloadService
from cellar.services.lock_service import package_lock
from cellar.services.registry_service import RegistryService
from cellar.services.wrapper_service import WrapperService
from cellar.utils.logger import log


def _prune_empty(directory: Path):
    try:
        directory.rmdir()
    except OSError:
        pass  # Not empty or already gone


def _collect_files(root: Path) -> Set[str]:
    """Every path under ``root``, relative to it, in POSIX form."""
    found = set()
    for current, dirs, files in os.walk(root):
        base = Path(current)
        for entry in dirs + files:
            found.add((base / entry).relative_to(root).as_posix())
    return found


class Installer:
    """
    Installs, activates and removes formula packages inside one cellar layout.
    """

    def __init__(
        self,
        layout: Optional[CellarLayout] = None,
        registry: Optional[RegistryService] = None,
        downloader: Optional[DownloadService] = None,
    ):
        self.layout = layout or config_manager.layout()
        self.registry = registry or RegistryService(DatabaseManager(self.layout.db_path))
        self.downloader = downloader or DownloadService(
            timeout=config_manager.get("download_timeout")
        )

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    def cached_archive_path(self, manifest: Manifest) -> Path:
        return self.layout.cache_dir / f"{manifest.content_hash}--{manifest.archive_basename}"

    def fetch(self, manifest: Manifest) -> Path:
        """Download the formula's archive into the cache, reusing a cached copy."""
        archive = self.cached_archive_path(manifest)
        if archive.is_file():
            log.info(f"Using cached download {archive.name}")
            return archive
        log.info(f"==> Fetching {manifest.name} {manifest.version}")
        return self.downloader.download_file(manifest.source_url, archive)

    def verify(self, archive_path: Path, content_hash: str):
        """
        Check the archive against its declared digest.

        A cached archive that fails verification is deleted so the next
        attempt downloads it again.
        """
        try:
            self.downloader.verify_hash(archive_path, content_hash)
        except IntegrityError:
            archive_path = Path(archive_path)
            if archive_path.parent == self.layout.cache_dir and archive_path.exists():
                log.warning(f"Removing corrupt cached download {archive_path.name}")
                archive_path.unlink()
            raise

    def extract(self, archive_path: Path) -> Path:
        return ArchiveService.extract(archive_path, self.layout.staging_dir)

    def install(self, manifest: Manifest, staging_dir: Path, pin: bool = False) -> InstalledPackage:
        """
        Run the manifest's install actions against an extracted archive.

        The prefix is assembled in the staging area and moved into
        ``Cellar/<name>/<version>`` in one rename once every action has
        succeeded. The new version becomes active unless another version of
        the package is pinned.
        """
        with package_lock(self.layout.lock_dir, manifest.name):
            return self._install_locked(manifest, Path(staging_dir), pin)

    def install_formula(self, manifest: Manifest, pin: bool = False) -> InstalledPackage:
        """
        Full pipeline for one formula. Already-installed identical versions
        are returned as-is without fetching.
        """
        with package_lock(self.layout.lock_dir, manifest.name):
            existing = self._existing_install(manifest)
            if existing is not None:
                log.info(f"{manifest.name} {manifest.version} is already installed")
                if pin and not existing.pinned:
                    existing = self._pin_locked(existing)
                return existing

            archive = self.fetch(manifest)
            log.info(f"==> Verifying {archive.name}")
            self.verify(archive, manifest.content_hash)
            log.info(f"==> Extracting {archive.name}")
            staging = self.extract(archive)
            try:
                return self._install_locked(manifest, staging, pin)
            finally:
                shutil.rmtree(staging, ignore_errors=True)

    def install_many(self, manifests: Iterable[Manifest], max_workers: Optional[int] = None) -> List[InstalledPackage]:
        """
        Install several formulas. Archives are downloaded in parallel first;
        each package is then verified, extracted and installed in turn.
        """
        unique: Dict[tuple, Manifest] = {}
        for manifest in manifests:
            unique.setdefault((manifest.name, manifest.version), manifest)

        to_fetch = [m for m in unique.values() if self._existing_install(m) is None]
        if to_fetch:
            workers = max_workers or config_manager.get("fetch_workers", DEFAULT_FETCH_WORKERS)
            with ThreadPoolExecutor(max_workers=workers) as pool:
                # list() surfaces the first fetch error after all downloads settle
                list(pool.map(self.fetch, to_fetch))

        return [self.install_formula(m) for m in unique.values()]

    # ------------------------------------------------------------------
    # Removal and activation
    # ------------------------------------------------------------------

    def uninstall(self, name: str, version: str):
        """
        Remove one installed version: its launchers if active, its prefix and
        its registry record. The most recently installed remaining version
        of the package (or the pinned one) takes over the launchers.
        """
        with package_lock(self.layout.lock_dir, name):
            self._uninstall_locked(name, version)

    def uninstall_all(self, name: str) -> List[str]:
        with package_lock(self.layout.lock_dir, name):
            packages = self.registry.list(name)
            if not packages:
                raise NotFoundError(f"{name} is not installed")
            # Inactive versions first so nothing gets re-activated needlessly
            packages.sort(key=lambda p: p.active)
            for package in packages:
                self._uninstall_locked(name, package.version)
            return [p.version for p in packages]

    def activate(self, name: str, version: str) -> InstalledPackage:
        """Point the package's launchers at another installed version."""
        with package_lock(self.layout.lock_dir, name):
            package = self._require(name, version, stage="activate")
            pinned = self.registry.get_pinned(name)
            if pinned is not None and pinned.version != version:
                raise CellarError(f"{name} is pinned at {pinned.version}; unpin it first", stage="activate")
            self._activate(package)
            return self.registry.get(name, version)

    def pin(self, name: str, version: str) -> InstalledPackage:
        """Activate ``version`` and keep it active across later installs."""
        with package_lock(self.layout.lock_dir, name):
            return self._pin_locked(self._require(name, version, stage="pin"))

    def unpin(self, name: str):
        with package_lock(self.layout.lock_dir, name):
            if not self.registry.list(name):
                raise NotFoundError(f"{name} is not installed", stage="unpin")
            self.registry.set_pinned(name, None)
            log.info(f"Unpinned {name}")

    def list_installed(self, name: Optional[str] = None) -> List[InstalledPackage]:
        return self.registry.list(name)

    def info(self, name: str) -> List[InstalledPackage]:
        packages = self.registry.list(name)
        if not packages:
            raise NotFoundError(f"{name} is not installed", stage="info")
        return packages

    # ------------------------------------------------------------------
    # Internals; callers hold the package lock
    # ------------------------------------------------------------------

    def _existing_install(self, manifest: Manifest) -> Optional[InstalledPackage]:
        existing = self.registry.get(manifest.name, manifest.version)
        if existing and existing.content_hash == manifest.content_hash and existing.prefix_path.is_dir():
            return existing
        return None

    def _require(self, name: str, version: str, stage: str) -> InstalledPackage:
        package = self.registry.get(name, version)
        if package is None:
            raise NotFoundError(f"{name} {version} is not installed", stage=stage)
        return package

    def _install_locked(self, manifest: Manifest, staging_dir: Path, pin: bool) -> InstalledPackage:
        existing = self._existing_install(manifest)
        if existing is not None:
            log.info(f"{manifest.name} {manifest.version} is already installed")
            return existing

        prefix = self.layout.prefix_for(manifest.name, manifest.version)
        if os.path.lexists(prefix):
            raise InstallIOError(
                f"{prefix} already exists but is not a registered install of this formula; remove it first"
            )

        log.info(f"==> Installing {manifest.name} {manifest.version}")
        assembly = ArchiveService.make_staging_dir(self.layout.staging_dir, label=f"{manifest.name}-{manifest.version}")
        prefix_root_existed = prefix.parent.exists()
        try:
            wrappers = self._run_actions(manifest, staging_dir, assembly)
            installed_files = _collect_files(assembly)

            prefix.parent.mkdir(parents=True, exist_ok=True)
            os.rename(assembly, prefix)
        except OSError as e:
            if not prefix_root_existed:
                _prune_empty(prefix.parent)
            raise InstallIOError(f"Could not place {manifest.name} {manifest.version}: {e}") from e
        finally:
            if assembly.exists():
                shutil.rmtree(assembly, ignore_errors=True)

        log.info(f"Placed {manifest.name} {manifest.version} at {prefix}")
        previous = self.registry.get_active(manifest.name)
        try:
            package = self.registry.register(
                name=manifest.name,
                version=manifest.version,
                prefix_path=prefix,
                installed_files=installed_files,
                wrappers=wrappers,
                content_hash=manifest.content_hash,
                source_url=manifest.source_url,
            )
            pinned = self.registry.get_pinned(manifest.name)
            if pin:
                package = self._pin_locked(package)
            elif pinned is None:
                self._activate(package)
            else:
                log.info(f"{manifest.name} is pinned at {pinned.version}; leaving {manifest.version} inactive")
        except Exception:
            log.error(f"Rolling back {manifest.name} {manifest.version}")
            self._rollback(manifest.name, manifest.version, prefix, previous)
            raise

        return self.registry.get(manifest.name, manifest.version)

    def _run_actions(self, manifest: Manifest, staging_dir: Path, assembly: Path) -> Dict[str, str]:
        """Execute install actions into ``assembly``; return wrapper name -> target."""
        wrappers = {}
        for action in manifest.install_actions:
            if isinstance(action, CopyIntoPrefix):
                self._copy_into(staging_dir, assembly, action)
            elif isinstance(action, WriteExecutableWrapper):
                target = assembly / action.target_relative_path
                if not target.is_file():
                    raise InstallIOError(f"Launcher target {action.target_relative_path} is not in the prefix")
                if not os.access(target, os.X_OK):
                    log.warning(f"Launcher target {action.target_relative_path} is not executable")
                wrappers[manifest.wrapper_name_for(action)] = action.target_relative_path
        return wrappers

    @staticmethod
    def _copy_into(staging_dir: Path, assembly: Path, action: CopyIntoPrefix):
        source = staging_dir / action.relative_path
        if not os.path.lexists(source):
            source = ArchiveService.source_root(staging_dir) / action.relative_path
        if not os.path.lexists(source):
            raise InstallIOError(f"{action.relative_path} is not in the archive")

        dest = assembly / action.destination_name
        if os.path.lexists(dest):
            raise InstallIOError(f"{action.destination_name} is installed twice")

        if source.is_dir() and not source.is_symlink():
            shutil.copytree(source, dest, symlinks=True)
        else:
            shutil.copy2(source, dest, follow_symlinks=False)
        log.debug(f"Copied {action.relative_path} into prefix")

    def _check_wrapper_conflicts(self, package: InstalledPackage):
        for wrapper_name in package.wrappers:
            owner = self.registry.wrapper_owner(wrapper_name)
            if owner is not None and owner != package.name:
                raise InstallIOError(f"Launcher '{wrapper_name}' belongs to {owner}")
            wrapper_path = self.layout.bin_dir / wrapper_name
            if (owner is None and os.path.lexists(wrapper_path)
                    and not WrapperService.points_into(wrapper_path, self.layout.prefix_root(package.name))):
                raise InstallIOError(f"{wrapper_path} exists and is not managed by cellar")

    def _activate(self, package: InstalledPackage):
        """Write ``package``'s launchers and mark it the active version."""
        previous = self.registry.get_active(package.name)
        self._check_wrapper_conflicts(package)

        written = []
        try:
            for wrapper_name, target in package.wrappers.items():
                WrapperService.write(self.layout.bin_dir, wrapper_name, package.prefix_path / target)
                written.append(wrapper_name)
        except InstallIOError:
            for wrapper_name in written:
                WrapperService.remove(self.layout.bin_dir, wrapper_name)
            if previous is not None and previous.version != package.version:
                self._restore_wrappers(previous)
            raise

        if previous is not None and previous.version != package.version:
            for wrapper_name in previous.wrappers:
                if wrapper_name not in package.wrappers:
                    WrapperService.remove(self.layout.bin_dir, wrapper_name)

        self.registry.set_active(package.name, package.version)
        log.info(f"Activated {package.name} {package.version}")

    def _pin_locked(self, package: InstalledPackage) -> InstalledPackage:
        if not package.active:
            self._activate(package)
        self.registry.set_pinned(package.name, package.version)
        log.info(f"Pinned {package.name} at {package.version}")
        return self.registry.get(package.name, package.version)

    def _restore_wrappers(self, package: InstalledPackage):
        for wrapper_name, target in package.wrappers.items():
            try:
                WrapperService.write(self.layout.bin_dir, wrapper_name, package.prefix_path / target)
            except InstallIOError as e:
                log.error(f"Could not restore launcher {wrapper_name} for {package.name} {package.version}: {e}")

    def _rollback(self, name: str, version: str, prefix: Path, previous: Optional[InstalledPackage]):
        current = self.registry.get(name, version)
        if current is not None and current.active:
            for wrapper_name in current.wrappers:
                WrapperService.remove(self.layout.bin_dir, wrapper_name)
        self.registry.remove(name, version)
        shutil.rmtree(prefix, ignore_errors=True)
        _prune_empty(prefix.parent)
        if previous is not None:
            self._restore_wrappers(previous)
            self.registry.set_active(name, previous.version)

    def _uninstall_locked(self, name: str, version: str):
        package = self._require(name, version, stage="uninstall")
        log.info(f"==> Uninstalling {name} {version}")

        if package.active:
            for wrapper_name in package.wrappers:
                wrapper_path = self.layout.bin_dir / wrapper_name
                if os.path.lexists(wrapper_path) and not WrapperService.points_into(wrapper_path, package.prefix_path):
                    log.warning(f"Leaving {wrapper_path}; it no longer points into {package.prefix_path}")
                    continue
                WrapperService.remove(self.layout.bin_dir, wrapper_name)

        try:
            shutil.rmtree(package.prefix_path)
        except FileNotFoundError:
            log.warning(f"Prefix {package.prefix_path} was already removed")
        except OSError as e:
            raise InstallIOError(f"Could not remove {package.prefix_path}: {e}", stage="uninstall") from e
        _prune_empty(package.prefix_path.parent)

        self.registry.remove(name, version)

        if package.active:
            remaining = self.registry.list(name)
            if remaining:
                successor = self.registry.get_pinned(name) or remaining[-1]
                try:
                    self._activate(successor)
                except InstallIOError as e:
                    log.error(f"Could not activate {name} {successor.version} after uninstall: {e}")
