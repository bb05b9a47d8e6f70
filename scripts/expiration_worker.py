from __future__ import annotations

import asyncio
import signal

from credwatch.core.logging import configure_logging
from credwatch.services.expiration.worker import run_expiration_scan_loop


async def _main() -> None:
    # Long-running scan process; SIGTERM lets the in-flight scan finish before exit.
    configure_logging()
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass
    await run_expiration_scan_loop(stop_event=stop_event)


if __name__ == "__main__":
    asyncio.run(_main())
