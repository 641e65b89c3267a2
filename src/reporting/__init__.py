"""Console and file rendering of plans and apply reports."""
