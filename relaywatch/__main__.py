import sys

from relaywatch.main import main

sys.exit(main())
