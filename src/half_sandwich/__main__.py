"""``python -m half_sandwich`` runs the benchmark command line."""

import sys

from .benchmark import main

sys.exit(main())
