import sys

from wattkeeper.cli import main

sys.exit(main())
