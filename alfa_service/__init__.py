"""HTTP service compiling ALFA policies to XACML through the ALFA language server."""

__version__ = "0.1.0"
