"""swap-deps: point Gemfile and package.json dependencies at local or GitHub checkouts.

Key modules:
    cli           - Command-line entry point
    orchestrator  - Swap, restore and status across project directories
    manifest      - Backups and manifest rewriters
    sources       - GitHub spec parsing and the clone cache
    watch         - Background watch processes and their registry
"""

__version__ = "0.1.0"
