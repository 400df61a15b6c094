"""PriceWatch: multi-platform price comparison with background search jobs."""

__version__ = "0.1.0"
