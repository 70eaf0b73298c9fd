"""Workflow helper commands: plan status comments, comment removal and permission checks."""