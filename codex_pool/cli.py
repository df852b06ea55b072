from __future__ import annotations

import argparse
import copy
import os
from pathlib import Path

import anyio
import uvicorn
import uvicorn.config

from codex_pool.core.config.settings import Settings, get_settings


def _build_log_config(settings: Settings) -> dict:
    # Uvicorn's default LOGGING_CONFIG does not attach handlers to the `codex_pool.*` namespace.
    config = copy.deepcopy(uvicorn.config.LOGGING_CONFIG)
    loggers = config.setdefault("loggers", {})
    loggers["codex_pool"] = {
        "handlers": ["default"],
        "level": "DEBUG" if settings.debug else "INFO",
        "propagate": False,
    }
    return config


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the codex-pool multi-account proxy.")
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "2456")))

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("status", help="Print every pooled account and its rate-limit/usage state.")
    import_auth = subparsers.add_parser("import-auth", help="Add the identity from a Codex auth.json to the pool.")
    import_auth.add_argument(
        "--path",
        type=Path,
        default=None,
        help="Path to auth.json (default: CODEX_POOL_CODEX_AUTH_FILE or ~/.codex/auth.json).",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    settings = get_settings()

    if args.command is None:
        uvicorn.run(
            "codex_pool.main:app",
            host=args.host,
            port=args.port,
            log_config=_build_log_config(settings),
            access_log=settings.access_log_enabled,
        )
        return

    if args.command == "status":
        from codex_pool.modules.accounts.pool import AccountPool
        from codex_pool.modules.status.service import render_status

        pool = AccountPool()
        pool.load()
        print(render_status(pool.accounts, pool.cursor.active_index), end="")
        return

    if args.command == "import-auth":
        from codex_pool.modules.accounts.credential_store import import_auth_file
        from codex_pool.modules.accounts.pool import AccountPool

        async def _run() -> None:
            pool = AccountPool()
            pool.load()
            path = args.path.expanduser() if args.path else settings.codex_auth_file
            index = await import_auth_file(pool, path)
            if index is None:
                raise SystemExit(f"No importable credential found at {path}")
            account = pool.get(index)
            label = account.label if account is not None else f"Account {index + 1}"
            print(f"imported index={index} label={label} accounts={len(pool)}")

        anyio.run(_run)
        return

    raise SystemExit(f"Unknown command: {args.command}")


if __name__ == "__main__":
    main()
