"""
pocscan - Temp Staging Manager
Copies a task's selected templates into one disposable directory so nuclei can be
given a single -t argument instead of hundreds.
"""

import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from loguru import logger


YAML_SUFFIXES = (".yaml", ".yml")


def resolve_template_path(templates_dir: Path, template: str) -> Path:
    """Absolute paths pass through; catalog-relative ones resolve under templates_dir."""
    path = Path(template).expanduser()
    if not path.is_absolute():
        path = Path(templates_dir) / path
    if path.suffix.lower() not in YAML_SUFFIXES:
        path = path.with_name(path.name + ".yaml")
    return path


def template_id_from_path(template: str) -> str:
    """nuclei reports a template by its id, which by convention is the file stem."""
    name = Path(template).name
    for suffix in YAML_SUFFIXES:
        if name.lower().endswith(suffix):
            return name[: -len(suffix)]
    return name


@dataclass
class StagingResult:
    path: Optional[Path]
    copied: List[str] = field(default_factory=list)
    failed_paths: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def usable(self) -> bool:
        return self.path is not None and bool(self.copied)


class TempManager:
    """Creates, removes and garbage-collects per-task staging directories."""

    def __init__(self, base_dir: Path, templates_dir: Path):
        self.base_dir = Path(base_dir)
        self.templates_dir = Path(templates_dir)

    def _unique_dir(self, task_id: int) -> Path:
        stem = f"task_{task_id}_{int(time.time())}"
        candidate = self.base_dir / stem
        n = 1
        while candidate.exists():
            candidate = self.base_dir / f"{stem}_{n}"
            n += 1
        return candidate

    def _relative_dest(self, src: Path) -> Path:
        try:
            return src.resolve().relative_to(self.templates_dir.resolve())
        except ValueError:
            return Path(src.name)

    def create_temp_dir(self, task_id: int, template_paths: List[str]) -> StagingResult:
        """Copy every template into task_<id>_<unix_ts>/, recording per-file failures."""
        started = time.time()
        temp_dir = self._unique_dir(task_id)
        try:
            temp_dir.mkdir(parents=True)
        except OSError as e:
            logger.error(f"[TempManager] Failed to create temp directory {temp_dir}: {e}")
            return StagingResult(
                path=None,
                failed_paths=list(template_paths),
                errors=[f"failed to create temp directory {temp_dir}: {e}"],
            )

        result = StagingResult(path=temp_dir)
        for template in template_paths:
            src = resolve_template_path(self.templates_dir, template)
            dst = temp_dir / self._relative_dest(src)
            # Same basename from two different directories
            n = 1
            while dst.exists():
                dst = dst.with_name(f"{template_id_from_path(src.name)}_{n}{src.suffix}")
                n += 1
            try:
                dst.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dst)
            except OSError as e:
                result.failed_paths.append(template)
                result.errors.append(f"failed to copy {template}: {e}")
                continue
            result.copied.append(template)

        elapsed_ms = int((time.time() - started) * 1000)
        logger.info(
            f"[TempManager] Staged {len(result.copied)}/{len(template_paths)} templates "
            f"into {temp_dir} ({elapsed_ms} ms)"
        )
        for err in result.errors:
            logger.warning(f"[TempManager] {err}")
        return result

    def cleanup_temp_dir(self, path: Optional[Path]) -> bool:
        """Best-effort recursive removal."""
        if not path:
            return False
        path = Path(path)
        if not path.exists():
            return False
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            logger.warning(f"[TempManager] Could not fully remove {path}")
            return False
        logger.debug(f"[TempManager] Removed {path}")
        return True

    def cleanup_stale(self, max_age_s: float = 24 * 60 * 60) -> int:
        """Remove staging directories older than max_age_s. Returns how many were removed."""
        now = time.time()
        removed = 0
        for entry in self.list_dirs():
            try:
                age = now - entry.stat().st_mtime
            except FileNotFoundError:
                continue
            if age > max_age_s and self.cleanup_temp_dir(entry):
                removed += 1
        if removed:
            logger.info(f"[TempManager] Removed {removed} stale staging directories")
        return removed

    def list_dirs(self) -> List[Path]:
        """Staging directories currently on disk."""
        if not self.base_dir.exists():
            return []
        return sorted(p for p in self.base_dir.iterdir() if p.is_dir() and p.name.startswith("task_"))
