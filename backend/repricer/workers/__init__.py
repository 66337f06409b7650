"""
Background workers for the repricer.

Workers:
- price_reduction_worker: runs the price reduction pass every PRICE_REDUCTION_INTERVAL_SECONDS
"""

from repricer.workers.price_reduction_worker import run_price_reduction_once, run_price_reduction_worker_loop

__all__ = ["run_price_reduction_once", "run_price_reduction_worker_loop"]
