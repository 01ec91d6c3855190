#!/usr/bin/env python
from impersonation_controller.cli import cli

if __name__ == "__main__":
    cli()
