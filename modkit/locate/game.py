# modkit/locate/game.py
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Protocol, runtime_checkable

from modkit.config.settings import settings
from modkit.install.tree import ModTree

logger = logging.getLogger(__name__)

__all__ = ["GAME_DIR_ENV_VAR", "GameLocator", "ConfiguredGameLocator", "locateTree"]



GAME_DIR_ENV_VAR = "MODKIT_GAME_DIR"



@runtime_checkable
class GameLocator(Protocol):
    """Finds the host game's installation root. None means "not found"."""

    def locate(self) -> Path | None: ...



class ConfiguredGameLocator:
    """
    Locator without platform probing. Looks at, in order: the explicit
    `installDir`, the MODKIT_GAME_DIR environment variable and the
    `game.installDir` setting. A candidate must be an existing directory.
    """

    def __init__(self, installDir: str | os.PathLike[str] | None = None) -> None:
        self.installDir = installDir

    def _candidates(self) -> list[tuple[str, str]]:
        out: list[tuple[str, str]] = []
        if self.installDir is not None:
            out.append(("argument", os.fspath(self.installDir)))
        envValue = os.environ.get(GAME_DIR_ENV_VAR)
        if envValue:
            out.append((GAME_DIR_ENV_VAR, envValue))
        configured = settings("game.installDir", None)
        if configured:
            out.append(("game.installDir", str(configured)))
        return out

    def locate(self) -> Path | None:
        for origin, raw in self._candidates():
            path = Path(os.path.expanduser(raw))
            if path.is_dir():
                logger.debug("Game directory '%s' (from %s)", path, origin)
                return path.resolve()
            logger.warning("Game directory '%s' from %s does not exist", path, origin)
        return None



def locateTree(locator: GameLocator) -> ModTree | None:
    root = locator.locate()
    return ModTree.at(root) if root is not None else None
