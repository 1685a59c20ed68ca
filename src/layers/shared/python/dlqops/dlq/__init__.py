"""Dead-letter queue monitoring, rule evaluation and auto-replay."""
