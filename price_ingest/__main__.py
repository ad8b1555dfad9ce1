import sys

from price_ingest.daemon import main

sys.exit(main())
