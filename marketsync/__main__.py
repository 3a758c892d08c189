import sys

from marketsync.cli import main

sys.exit(main())
