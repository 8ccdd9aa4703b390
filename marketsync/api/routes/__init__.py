from . import jobs, markets

__all__ = ["jobs", "markets"]
