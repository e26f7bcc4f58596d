import sys

from drop_cell.cli import main

sys.exit(main())
