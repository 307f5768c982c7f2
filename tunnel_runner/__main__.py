import sys

from tunnel_runner.main import main

sys.exit(main())
