import sys

from contractlens.cli.main import main

sys.exit(main())
