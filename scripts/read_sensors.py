#!/usr/bin/env python3
"""Example device that publishes sensor readings as telemetry events.

Connection settings come from the ``IOT_*`` environment variables (see
``ThingOptions.from_env``). Every ``--interval`` seconds the output of
``--command`` is published as an event. Each configuration document pushed
by the server is remembered and echoed back as device state.

    IOT_PROJECT_ID=... IOT_LOCATION=... IOT_REGISTRY=... IOT_DEVICE_ID=... \\
    IOT_CERTIFICATE_PATH=cert.pem IOT_PRIVATE_KEY_PATH=key.pem \\
    python scripts/read_sensors.py ssl://mqtt.googleapis.com:8883
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import tempfile
from datetime import datetime
from pathlib import Path

# Allow running from repo root without installing the package.
_src = Path(__file__).resolve().parent.parent / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pyiotcore import IotError, Thing, ThingOptions  # noqa: E402

_LOG = logging.getLogger("read_sensors")


class SensorReader:
    def __init__(self, command: str, interval: float) -> None:
        self.command = command
        self.interval = interval
        self.config = ""
        self._stop = asyncio.Event()

    async def telemetry(self) -> bytes:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            output, _ = await proc.communicate()
        except OSError as exc:
            output = f"ERROR: {exc}".encode()
        return datetime.now().isoformat().encode() + b"\n" + output

    def state(self) -> bytes:
        return f"Config: {self.config}".encode()

    async def on_config(self, thing: Thing, payload: bytes) -> None:
        _LOG.info("Config received, sending state")
        self.config = payload.decode("utf-8", errors="replace")
        await thing.publish_state(self.state())

    def stop(self) -> None:
        self._stop.set()

    async def run(self, thing: Thing) -> None:
        while not self._stop.is_set():
            try:
                await thing.publish_event(await self.telemetry(), timeout=self.interval)
            except IotError as exc:
                _LOG.warning("Publishing telemetry failed: %s", exc)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except TimeoutError:
                continue


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Publish sensor readings to the IoT bridge.")
    parser.add_argument("brokers", nargs="+", help="Broker address(es), e.g. ssl://mqtt.googleapis.com:8883")
    parser.add_argument("--command", default="/usr/bin/sensors", help="Command whose output is published")
    parser.add_argument("--interval", type=float, default=15.0, help="Seconds between telemetry events")
    parser.add_argument("--queue-directory", help="Queue directory (default: a temporary directory)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser.parse_args()


async def main() -> None:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    reader = SensorReader(args.command, args.interval)
    queue_directory = args.queue_directory or tempfile.mkdtemp(prefix="iot-queue-")
    options = ThingOptions.from_env(
        config_handler=reader.on_config,
        queue_directory=queue_directory,
        log_mqtt=args.verbose,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, reader.stop)

    async with Thing(options) as thing:
        await thing.connect(*args.brokers, timeout=60)
        await reader.run(thing)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except IotError as exc:
        raise SystemExit(f"read_sensors: {exc}") from exc
