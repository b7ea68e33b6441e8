"""Allow ``python -m oration_deploy``."""

from oration_deploy.cli import app

app(prog_name="oration-deploy")
