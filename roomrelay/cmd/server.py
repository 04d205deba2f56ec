from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from roomrelay.server.runtime import ServerRuntime

log = logging.getLogger("roomrelay.cmd.server")


def load_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    config = yaml.safe_load(path.read_text()) or {}
    if not isinstance(config, dict):
        raise SystemExit(f"{path}: expected a mapping at the top level")
    return config


async def _run(config: Dict[str, Any]) -> None:
    runtime = ServerRuntime(config)
    await runtime.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Server running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Room chat relay server")
    parser.add_argument("--config", help="Path to server YAML config")
    parser.add_argument("--listen", help="host:port to bind, overrides the config file")
    parser.add_argument("--log-level", help="Logging level, overrides the config file")
    args = parser.parse_args(argv)

    config = load_config(Path(args.config) if args.config else None)
    if args.listen:
        config["listen"] = args.listen
    if args.log_level:
        config["log_level"] = args.log_level

    level = str(config.get("log_level", "INFO")).upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
