"""Allow ``python -m certsteward``."""

from certsteward.cli.main import main

main()
