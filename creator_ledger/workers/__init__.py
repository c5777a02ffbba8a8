"""Background workers."""
from .dunning_worker import DunningWorker, start_dunning_worker

__all__ = ["DunningWorker", "start_dunning_worker"]
