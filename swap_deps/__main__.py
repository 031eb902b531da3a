import sys

from swap_deps.cli import main

sys.exit(main())
