"""Automated triage and pull request workflow for GitHub issues.

This package drives GitHub issues through an agent-backed lifecycle:
- GitHub webhook verification and issue intake
- Triage and PR-generation tasks on an external agent task service
- Confidence gate deciding automatic escalation from triage to PR
- Workflow state machine with PostgreSQL (or in-memory) persistence
- Status comments posted back to the issue tracker
"""
