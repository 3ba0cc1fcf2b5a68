"""Configuration, shutdown signalling, logging setup, metrics and application statistics."""