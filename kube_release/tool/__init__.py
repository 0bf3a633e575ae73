"""Command line tool for building and releasing a containerized service."""
