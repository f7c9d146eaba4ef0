"""
scmd-local: manage the local llama.cpp backend.

Commands:
    scmd-local models list          List catalog models and what is downloaded
    scmd-local models pull NAME     Download a model into the cache
    scmd-local models rm NAME       Delete a cached model
    scmd-local server status        Show whether llama-server is running
    scmd-local server stop          Stop a llama-server started by scmd
    scmd-local complete PROMPT      Run a single completion
"""
from __future__ import annotations

from typing import Optional, Sequence
import argparse
import logging
import sys

from scmd_local.app.container import build_catalog, build_local_backend, get_supervisor
from scmd_local.app.settings import BackendSettings, configure_logging
from scmd_local.config.paths_config import DataPaths
from scmd_local.helpers.units import format_bytes
from scmd_local.interfaces.backend.messages import CompletionRequest
from scmd_local.interfaces.errors import ScmdBackendError

logger = logging.getLogger(__name__)

ENV_HELP = (
    "Environment variables:\n"
    "  SCMD_DATA_DIR       Data directory (default: ~/.scmd)\n"
    "  SCMD_DEBUG          Verbose tracing to stderr\n"
    "  SCMD_CPU_ONLY       Run llama-server without GPU offload\n"
    "  SCMD_NO_AUTOSTART   Never launch llama-server automatically\n"
    "  SCMD_QUIET          No progress output\n"
    "  SCMD_TEST_MODE      Never download models\n"
)


# ---------- models ----------

def cmd_models_list(settings: BackendSettings, args: argparse.Namespace) -> int:
    catalog = build_catalog(settings)
    known_files = set()
    print(f"{'NAME':<16} {'VARIANT':<10} {'SIZE':>10}  {'CONTEXT':>8}  STATUS")
    for spec in catalog.list_known():
        path = catalog.local_path(spec)
        known_files.add(path.name)
        status = "downloaded" if catalog.is_cached(spec) else "-"
        print(
            f"{spec.name:<16} {spec.variant:<10} {format_bytes(spec.expected_size_bytes):>10}  "
            f"{spec.native_context_length:>8}  {status}"
        )

    extra = [p for p in catalog.list_cached() if p.name not in known_files]
    if extra:
        print("\nOther GGUF files in the cache:")
        for p in extra:
            print(f"  {p.name} ({format_bytes(p.stat().st_size)})")
    return 0


def cmd_models_pull(settings: BackendSettings, args: argparse.Namespace) -> int:
    catalog = build_catalog(settings)
    spec = catalog.find(args.name)
    if spec is not None and catalog.is_cached(spec):
        print(f"{args.name} is already downloaded: {catalog.local_path(spec)}")
        return 0
    path = catalog.resolve(args.name)
    print(f"Ready: {path}")
    return 0


def cmd_models_rm(settings: BackendSettings, args: argparse.Namespace) -> int:
    catalog = build_catalog(settings)
    removed = catalog.delete(args.name)
    print(f"Deleted {removed}")
    return 0


# ---------- server ----------

def cmd_server_status(settings: BackendSettings, args: argparse.Namespace) -> int:
    sup = get_supervisor(settings.paths, settings)
    pid = sup.recorded_pid()
    listening = sup.is_listening(settings.host, settings.port)
    if listening:
        owner = f"PID {pid}" if pid else "not started by scmd"
        print(f"llama-server is running on {settings.host}:{settings.port} ({owner})")
    elif pid:
        print(f"llama-server (PID {pid}) is running but not answering on port {settings.port}")
    else:
        print("llama-server is not running")
    print(f"Log: {settings.paths.server_log}")
    return 0 if listening else 1


def cmd_server_stop(settings: BackendSettings, args: argparse.Namespace) -> int:
    sup = get_supervisor(settings.paths, settings)
    pid = sup.stop_recorded()
    if pid is None:
        print("No llama-server started by scmd was found.", file=sys.stderr)
        return 1
    print(f"Stopped llama-server (PID {pid})")
    return 0


# ---------- complete ----------

def cmd_complete(settings: BackendSettings, args: argparse.Namespace) -> int:
    backend = build_local_backend(settings, server_url=args.server_url)
    if args.context_size:
        backend.set_context_size(args.context_size)

    prompt = args.prompt
    if prompt == "-":
        prompt = sys.stdin.read()

    resp = backend.complete(
        CompletionRequest(
            prompt=prompt,
            system_prompt=args.system or "",
            max_tokens=args.max_tokens,
            temperature=args.temperature,
        )
    )
    print(resp.content)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scmd-local",
        description="Local llama.cpp backend for scmd",
        epilog=ENV_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--data-dir", default=None, help="Override SCMD_DATA_DIR")
    parser.add_argument("--port", type=int, default=None, help="llama-server port (default: 8089)")
    parser.add_argument("--cpu-only", action="store_true", help="Same as SCMD_CPU_ONLY=1")
    parser.add_argument("--debug", action="store_true", help="Same as SCMD_DEBUG=1")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # models
    p_models = subparsers.add_parser("models", help="Manage downloaded models")
    models_sub = p_models.add_subparsers(dest="action")
    models_sub.add_parser("list", help="List known and downloaded models").set_defaults(func=cmd_models_list)
    p_pull = models_sub.add_parser("pull", help="Download a model")
    p_pull.add_argument("name", help="Catalog model name (e.g. qwen3-4b)")
    p_pull.set_defaults(func=cmd_models_pull)
    p_rm = models_sub.add_parser("rm", help="Delete a downloaded model")
    p_rm.add_argument("name", help="Catalog model name or file name")
    p_rm.set_defaults(func=cmd_models_rm)

    # server
    p_server = subparsers.add_parser("server", help="Inspect or stop llama-server")
    server_sub = p_server.add_subparsers(dest="action")
    server_sub.add_parser("status", help="Show server status").set_defaults(func=cmd_server_status)
    server_sub.add_parser("stop", help="Stop the server").set_defaults(func=cmd_server_stop)

    # complete
    p_complete = subparsers.add_parser("complete", help="Run one completion")
    p_complete.add_argument("prompt", help="Prompt text, or - to read stdin")
    p_complete.add_argument("-m", "--model", default=None, help="Model name or GGUF path")
    p_complete.add_argument("-s", "--system", default=None, help="System prompt")
    p_complete.add_argument("--max-tokens", type=int, default=0, help="Tokens to generate (default: 2048)")
    p_complete.add_argument("--temperature", type=float, default=0.0, help="Sampling temperature (default: 0.7)")
    p_complete.add_argument("--context-size", type=int, default=None, help="Context window (default: model native)")
    p_complete.add_argument("--server-url", default=None, help="Use an already running llama-server")
    p_complete.set_defaults(func=cmd_complete)

    return parser


def _settings_from_args(args: argparse.Namespace) -> BackendSettings:
    overrides = {}
    if args.data_dir:
        overrides["paths"] = DataPaths.from_strings(args.data_dir)
    if args.port:
        overrides["port"] = args.port
    if args.cpu_only:
        overrides["cpu_only"] = True
    if args.debug:
        overrides["debug"] = True
    if getattr(args, "model", None):
        overrides["model_name"] = args.model
    return BackendSettings.from_env(**overrides)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if getattr(args, "func", None) is None:
        parser.print_help()
        return 2

    try:
        settings = _settings_from_args(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    configure_logging(settings)

    try:
        return args.func(settings, args)
    except ScmdBackendError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
