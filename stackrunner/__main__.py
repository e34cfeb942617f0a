import sys

from stackrunner.cli import main

sys.exit(main())
