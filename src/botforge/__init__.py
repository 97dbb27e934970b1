"""Botforge: deploy catalog bots as local processes or panel-hosted servers."""

__version__ = "0.1.0"
