"""Allow ``python -m wikimirror.cli`` execution."""

from wikimirror.cli.sync import main

main()
