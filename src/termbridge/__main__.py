"""Allow `python -m termbridge` to launch the gateway."""

from termbridge.main import main_sync

main_sync()
