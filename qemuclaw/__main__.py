"""Allow ``python -m qemuclaw``."""

from qemuclaw.cli import main

raise SystemExit(main())
