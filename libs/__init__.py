"""MeetPrep shared libraries.

This package contains reusable components:
- common: Application settings
- graph: Neo4j access for the meeting graph
- calendar: Google Calendar client
- worker: Calendar cataloging worker
"""
