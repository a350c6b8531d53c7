"""Browser profile pool, process handles and Playwright session launching."""
