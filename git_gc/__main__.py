import sys

from git_gc.cli import main

sys.exit(main())
