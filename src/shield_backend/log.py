# src/shield_backend/log.py
from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_file: Optional[Path] = None, level: str = "INFO", verbose: bool = False) -> None:
    """
    Fichier tournant (niveau de la config) + console (WARNING, DEBUG avec -v).
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    file_level = getattr(logging, level.upper(), logging.INFO)
    console_level = logging.DEBUG if verbose else logging.WARNING
    root.setLevel(min(file_level, console_level))

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            fh = RotatingFileHandler(log_file, maxBytes=1024 * 1024, backupCount=3)
            fh.setLevel(file_level)
            fh.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(fh)
        except OSError as e:
            print(f"[!] Impossible d'ouvrir le journal {log_file} : {e}", file=sys.stderr)

    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(console_level)
    sh.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    root.addHandler(sh)
