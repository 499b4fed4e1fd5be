"""CLI entry point for forge3d.cli module.

Enables execution via: python -m forge3d.cli (same as forge3d.cli.reconcile_jobs)
"""

from forge3d.cli.reconcile_jobs import main

if __name__ == "__main__":
    raise SystemExit(main())
