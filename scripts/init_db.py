from __future__ import annotations

import asyncio

from ghpolicies.core.logging import configure_logging
from ghpolicies.persistence.db import engine, init_models


async def _main() -> None:
    # Create the compliance tables on a fresh database.
    configure_logging()
    await init_models()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(_main())
