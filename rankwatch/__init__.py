"""rankwatch: projected promotion times for items waiting in a periodic queue."""
