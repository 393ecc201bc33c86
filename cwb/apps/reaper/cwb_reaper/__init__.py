"""CWB Reaper: background loops for the billing lifecycle."""
