"""
Transaction correlation and deduplication.

Decides whether a newly arriving transaction (receipt photo, email, SMS,
voice note, ...) is a new purchase or another sighting of one the owner
already has on record, and merges the two into a single survivor.
"""

__version__ = "0.1.0"
