"""Reading and writing keyed FST tables."""
