"""
Backup, restore and archive history for the warehouse database.
"""
