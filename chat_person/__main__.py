"""Allow ``python -m chat_person``."""

from .main import run

run()
