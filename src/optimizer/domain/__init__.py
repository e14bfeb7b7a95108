"""Pure domain rules: lifecycle transitions, counters and deadlines."""
