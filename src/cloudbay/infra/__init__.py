"""Infrastructure clients: database, Docker API, host commands, SSH."""
