"""Core domain package for tginbox.

Core contains the SMTP session state machine, message decoding, account
routing and fan-out logic without any Telegram or socket-specific code,
keeping the mail pipeline portable and testable.
"""
