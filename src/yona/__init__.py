"""Session task daemon with a line-delimited JSON control socket."""

__version__ = "0.3.0"
