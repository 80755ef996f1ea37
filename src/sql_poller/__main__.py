import sys

from sql_poller.main import main

sys.exit(main())
