from __future__ import annotations
from pathlib import Path
from typing import Optional
import os
import shutil
import sys

from scmd_local.interfaces.errors import BinaryNotFoundError


def _exe(name: str) -> str:
    return name + ".exe" if sys.platform == "win32" else name


def candidate_paths(bin_dir: Optional[Path] = None) -> list[Path]:
    """
    Ordered places to look for llama-server, highest priority first:
    the data directory's bin/, next to the running tool, then common
    install locations. PATH is consulted separately.
    """
    name = _exe("llama-server")
    candidates: list[Path] = []

    if bin_dir is not None:
        candidates.append(bin_dir / name)

    # bundled with the tool: bin/ subdir, Homebrew libexec, same directory
    exec_dir = Path(sys.argv[0] or sys.executable).resolve().parent
    candidates += [
        exec_dir / "bin" / name,
        exec_dir.parent / "libexec" / name,
        exec_dir / name,
        Path(sys.executable).resolve().parent / name,
    ]

    candidates += [
        Path("llama.cpp") / "build" / "bin" / name,
        Path("/usr/local/bin") / name,
        Path("/usr/lib/scmd") / name,
        Path("/opt/llama.cpp") / name,
    ]

    home = Path.home()
    candidates += [
        home / ".local" / "bin" / name,
        home / "llama.cpp" / "build" / "bin" / name,
    ]
    return candidates


def find_llama_server(bin_dir: Optional[Path] = None) -> Path:
    """Return the first usable llama-server executable."""
    for p in candidate_paths(bin_dir):
        if p.is_file() and os.access(p, os.X_OK):
            return p

    on_path = shutil.which(_exe("llama-server"))
    if on_path:
        return Path(on_path)

    raise BinaryNotFoundError(
        "start server",
        "llama-server not found",
        "The local backend runs models through llama.cpp's llama-server, which is not installed.",
        [
            "Install llama.cpp (e.g. `brew install llama.cpp`) so llama-server is on your PATH",
            f"Or copy a llama-server binary into {bin_dir}" if bin_dir else "Or copy a llama-server binary next to scmd",
            "Or run your own llama-server on the configured port; it will be used automatically",
        ],
    )
