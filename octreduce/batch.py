from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ReductionIOError
from .process import ReductionConfig, ReductionProcess

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileResult:
    source: Path
    output: Path | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchReport:
    results: list[FileResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[FileResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> list[FileResult]:
        return [r for r in self.results if not r.ok]


def _describe(path: Path, verbose: bool) -> str:
    if not verbose:
        return path.name
    return f"{path.name} ({path.stat().st_size / (1024 * 1024):.3f} MB)"


def input_files(input_directory: str | Path) -> list[Path]:
    directory = Path(input_directory)
    if not directory.is_dir():
        raise ReductionIOError(f"input directory does not exist: {directory}")
    return sorted(p for p in directory.iterdir() if p.is_file())


def reduce_directory(
    input_directory: str | Path,
    config: ReductionConfig,
    *,
    verbose: bool = False,
    process: ReductionProcess | None = None,
) -> BatchReport:
    """Reduce every regular file of a directory; a failing file does not stop the batch."""

    files = input_files(input_directory)
    report = BatchReport()
    if not files:
        logger.warning("input directory %s is empty", input_directory)
        return report

    process = process or ReductionProcess(config)
    total = len(files)
    logger.info("start reduction of %d files", total)
    for idx, path in enumerate(files, start=1):
        logger.info("(%d/%d) reduce file: %s", idx, total, _describe(path, verbose))
        try:
            out_path = process.reduce_file(path, verbose=verbose)
        except Exception as exc:
            logger.exception("(%d/%d) failed to reduce %s", idx, total, path)
            report.results.append(FileResult(source=path, error=f"{type(exc).__name__}: {exc}"))
            continue
        logger.info("(%d/%d) finished, reduced file: %s", idx, total, _describe(out_path, verbose))
        report.results.append(FileResult(source=path, output=out_path))

    logger.info(
        "finished reduction: %d succeeded, %d failed", len(report.succeeded), len(report.failed)
    )
    return report
