"""Workflow engine – context scoping, task pipeline, cycle state machine,
history archival and session persistence."""
