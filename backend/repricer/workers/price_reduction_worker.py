"""
Price Reduction Worker

Runs one price reduction pass every PRICE_REDUCTION_INTERVAL_SECONDS
(hourly by default). Started from the FastAPI startup hook, or standalone via
``python -m repricer.workers.price_reduction_worker``.
"""
import asyncio
from typing import Optional

from repricer.config import settings
from repricer.services.price_reduction_service import run_reduction_pass
from repricer.utils.logger import logger


async def run_price_reduction_once() -> dict:
    result = await run_reduction_pass()
    logger.info(
        "Price reduction cycle completed: users=%s evaluated=%s reduced=%s failed=%s pruned=%s",
        result["users_processed"],
        result["listings_evaluated"],
        result["listings_reduced"],
        result["listings_failed"],
        result["logs_pruned"],
    )
    return result


async def run_price_reduction_worker_loop(max_cycles: Optional[int] = None):
    """
    Run the price reduction pass in a loop.
    ``max_cycles`` bounds the loop (tests); None runs forever.
    """
    logger.info("Price reduction worker loop started")

    cycles = 0
    while True:
        try:
            await run_price_reduction_once()
        except Exception as e:
            logger.error(f"Price reduction worker loop error: {str(e)}", exc_info=True)

        cycles += 1
        if max_cycles is not None and cycles >= max_cycles:
            break
        await asyncio.sleep(settings.PRICE_REDUCTION_INTERVAL_SECONDS)


if __name__ == "__main__":
    asyncio.run(run_price_reduction_worker_loop())
