"""Helper used by a test harness to prepare a difftest directory.

The harness calls :func:`init` before the instrumented test starts.  The
test process itself should write its raw profile to
:attr:`DifftestsEnv.self_profile`; processes it spawns inherit
:attr:`DifftestsEnv.env`, which points the profiling runtime at a per-process
file name in the same directory.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, MutableMapping, Tuple

from .core import (
    ENGINE_VERSION,
    OTHER_PROFILE_FILENAME_TEMPLATE,
    SELF_JSON_FILENAME,
    SELF_PROFILE_FILENAME,
    VERSION_FILENAME,
    TestDesc,
)
from .errors import IoError

LOGGER = logging.getLogger(__name__)

PROFILE_FILE_ENV = "LLVM_PROFILE_FILE"


@dataclass(slots=True)
class DifftestsEnv:
    """Profile locations for a test process and its children."""

    directory: Path
    self_profile: Path
    env: Dict[str, str] = field(default_factory=dict)

    def env_for_children(self) -> Iterator[Tuple[str, str]]:
        return iter(self.env.items())

    def apply(self, environ: MutableMapping[str, str] | None = None) -> None:
        """Export the child profile template into ``environ`` (default ``os.environ``)."""

        target = os.environ if environ is None else environ
        target.update(self.env)


def init(desc: TestDesc, directory: Path) -> DifftestsEnv:
    """Recreate ``directory`` and record the identity of the test about to run."""

    directory = Path(directory)
    try:
        if directory.exists():
            shutil.rmtree(directory)
        directory.mkdir(parents=True)
        (directory / SELF_JSON_FILENAME).write_text(desc.model_dump_json(), encoding="utf-8")
        (directory / VERSION_FILENAME).write_text(ENGINE_VERSION, encoding="utf-8")
    except OSError as error:
        raise IoError(error, path=directory) from error

    LOGGER.debug("Initialised difftest directory %s for %s", directory, desc.test_name)
    template = directory / OTHER_PROFILE_FILENAME_TEMPLATE
    return DifftestsEnv(
        directory=directory,
        self_profile=directory / SELF_PROFILE_FILENAME,
        env={PROFILE_FILE_ENV: str(template)},
    )


__all__ = ["DifftestsEnv", "PROFILE_FILE_ENV", "init"]
