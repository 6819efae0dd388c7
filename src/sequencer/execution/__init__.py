"""Per-task execution: state machine, transactions, guards, and fakes."""
