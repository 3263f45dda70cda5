"""Building blocks of a buffer manager pairing GPUs with NICs and serving buffer registration."""

__version__ = "1.0.19"