"""
TaskPulse — Entry Point.

Single entry point: `python main.py` starts the notification worker,
`python main.py --once` runs one scheduler tick.
"""

from taskpulse.jobs.runner import main

if __name__ == "__main__":
    main()
