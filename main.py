#!/usr/bin/env python3
"""
Klip Server Main Entry Point
Runs the server from a source checkout, same as the `klip` console script
"""
from klip.server import main

if __name__ == "__main__":
    main()
