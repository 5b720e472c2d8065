import sys

from cellar.cli import main

sys.exit(main())
