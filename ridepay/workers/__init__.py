"""Background workers for scheduled payout processing."""
from .payout_sweeper import run_payout_sweep, start_payout_sweeper

__all__ = ["run_payout_sweep", "start_payout_sweeper"]
