"""Allow ``python -m support_chat``."""

from support_chat.cli import main

main()
