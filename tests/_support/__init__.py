"""Test doubles and seed identifiers shared across the suite."""

USER_ID = "user_1"
OTHER_USER_ID = "user_2"
WRITER = "agent_writer"
EDITOR = "agent_editor"
