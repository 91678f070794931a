import os
import pathlib
from typing import Optional

from dotenv import load_dotenv


def load_env_files(
    *,
    root_dir: Optional[str] = None,
    env_files: Optional[list[str]] = None,
) -> list[str]:
    """Load environment variables from .env.local and .env if present.

    Earlier files win and variables already set in the process are never
    overridden. Returns the files that were actually loaded.
    """

    if root_dir is None:
        base_dir = os.path.dirname(os.path.abspath(__file__))
        # workers -> prospect_miner -> src -> repo root
        root_dir = os.path.abspath(os.path.join(base_dir, os.pardir, os.pardir, os.pardir))

    if env_files is None:
        env_files = [".env.local", ".env"]

    loaded = []
    for rel in env_files:
        path = pathlib.Path(root_dir) / rel
        if path.is_file():
            load_dotenv(path, override=False)
            loaded.append(str(path))
    return loaded
