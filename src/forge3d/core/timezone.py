"""Force the process timezone to UTC.

Imported for its side effect by every entry point (app, CLI) so that
naive datetimes written to generation records are always UTC.
"""

import os

os.environ["TZ"] = "UTC"
