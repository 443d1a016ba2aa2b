"""Allow ``python -m aspire_devcontainer``."""

from .cli import app

app(prog_name="aspire-devcontainer")
