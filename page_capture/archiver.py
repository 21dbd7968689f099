import logging
import os
import tempfile
import time
import zipfile
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from .errors import CaptureError
from .store import ResourceInfo


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def archive_name(directory: Path) -> Path:
    stamp = int(time.time())
    path = directory / f"webpage_{stamp}.zip"
    n = 1
    while path.exists():
        path = directory / f"webpage_{stamp}_{n}.zip"
        n += 1
    return path


class Archiver:
    """Lay out a capture under a staging directory and zip it up."""

    def __init__(self, staging_dir: Union[str, Path]):
        self.root = Path(staging_dir).resolve()

    def _target(self, local_path: str) -> Optional[Path]:
        p = (self.root / local_path).resolve()
        if p != self.root and self.root not in p.parents:
            return None
        return p

    def stage(self, html: str, resources: Iterable[ResourceInfo]) -> List[str]:
        """Write index.html and every resource; return the paths that made it."""
        index = self.root / "index.html"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            index.write_text(html, encoding="utf-8")
        except OSError as e:
            raise CaptureError(f"writing index.html failed: {e}") from e

        written = ["index.html"]
        for res in resources:
            target = self._target(res.local_path)
            if target is None:
                logging.warning("refusing to write outside staging dir: %s", res.local_path)
                continue
            try:
                ensure_parent_dir(target)
                target.write_bytes(res.content)
            except OSError as e:
                logging.warning("failed to save %s: %s", res.local_path, e)
                continue
            written.append(target.relative_to(self.root).as_posix())
            logging.debug("staged %s (%d bytes)", res.local_path, res.size)
        logging.info("staged %d files in %s", len(written), self.root)
        return written

    def build_zip(self, archive_dir: Optional[Union[str, Path]] = None) -> Tuple[str, int]:
        out_dir = Path(archive_dir) if archive_dir else Path(tempfile.gettempdir())
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            path = archive_name(out_dir)
            with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for dirpath, dirnames, filenames in os.walk(self.root):
                    dirnames.sort()
                    for name in sorted(filenames):
                        full = Path(dirpath) / name
                        arcname = full.relative_to(self.root).as_posix()
                        zf.write(full, arcname)
            size = path.stat().st_size
        except OSError as e:
            raise CaptureError(f"creating archive failed: {e}") from e
        logging.info("archive written: %s (%d bytes)", path, size)
        return str(path), size
