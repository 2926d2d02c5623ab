"""
This whole package exists to serve the displays.

The path is as follows:
    1) Displays call the HTTP endpoints for the current state of a line, team or product sheet.
    2) Displays keep a WebSocket open and subscribe to the rooms they show.
    3) The watchers publish changes to those rooms when a poll cycle finds them.
    4) Operators may POST a manual check to run a cycle out of schedule.
"""
