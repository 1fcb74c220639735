"""Account security: password hashing, login lockout and one-time codes."""
