# telematics_ingest/__main__.py
"""Allow `python -m telematics_ingest`."""

import sys

from telematics_ingest.cli import main

sys.exit(main())
