#!/usr/bin/env python3

"""
Continuous worker that recalculates consumption for the whole fleet on a timer.
"""

from tank_telemetry.ingestion.worker import main

if __name__ == "__main__":
    main()
