import sys

from smoke.availability_booking_smoke import main

sys.exit(main())
