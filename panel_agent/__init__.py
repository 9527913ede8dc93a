"""panel-agent: persistent client linking a server host to a remote control panel."""

__version__ = "1.0.0"
