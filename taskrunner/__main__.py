import sys

from taskrunner.cli import main

sys.exit(main())
