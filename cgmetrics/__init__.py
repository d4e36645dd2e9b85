"""Read Linux control group (cgroups v1 and v2) metrics and limits for processes."""

__version__ = "0.1.0"