"""List USDC bridge transfers stored in the checkpoint directory.

Environment variables
---------------------
- ``CHECKPOINT_DIR``: Checkpoint directory, default ``~/.cache/usdc-bridge/checkpoints``.
- ``LOG_LEVEL``: Logging level (default: ``warning``).

Usage::

    poetry run python scripts/cctp/show-transfers.py
"""

import asyncio
import logging
import os

from tabulate import tabulate

from usdc_bridge.cctp.checkpoint import FileCheckpointStore
from usdc_bridge.cctp.config import BridgeConfig
from usdc_bridge.utils import setup_console_logging

logger = logging.getLogger(__name__)


async def run():
    config = BridgeConfig.from_environment()
    store = FileCheckpointStore(config.checkpoint_dir)

    rows = []
    for transfer_id in await store.list_transfer_ids():
        checkpoint = await store.get(transfer_id)
        request = checkpoint.request
        rows.append(
            [
                transfer_id[:12],
                checkpoint.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
                f"{request.source_chain} → {request.destination_chain}",
                f"{request.amount:,}",
                checkpoint.stage.value if not checkpoint.is_failed else f"failed ({checkpoint.failed_stage.value})",
                checkpoint.error_kind.value if checkpoint.error_kind else "",
                "yes" if checkpoint.is_resumable else "no",
                checkpoint.burn_tx_id or "",
            ]
        )

    if not rows:
        print(f"No transfers in {store.path}")
        return

    print(
        tabulate(
            rows,
            headers=["Transfer", "Updated (UTC)", "Route", "USDC", "Stage", "Error", "Resumable", "Burn tx"],
            tablefmt="simple",
        )
    )


def main():
    log_level = os.environ.get("LOG_LEVEL", "warning")
    setup_console_logging(default_log_level=log_level)
    asyncio.run(run())


if __name__ == "__main__":
    main()
