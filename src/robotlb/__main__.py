# Copyright 2026 dparv
# See LICENSE file for licensing details.

import sys

from robotlb.controller import main

sys.exit(main())
