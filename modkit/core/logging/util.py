from __future__ import annotations

import logging



def getModLogger(identity: object) -> logging.Logger:
    """Logger scoped to a single mod, e.g. `modkit.mod.Author-Name`."""
    return logging.getLogger(f"modkit.mod.{identity}")
