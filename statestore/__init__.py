"""
Learning State Store

Persistent, path-addressed state for the AI-assisted development harness.
The orchestration layer (log watchers, prompt generators, pre-flight checks)
reads and writes state through this package and reports every concluded fix
attempt to it.

Components:
- PathDocument: dotted-path tree ("learning.patterns") with get/set/update/merge
  and change notifications
- ChangeLog: bounded, importance-filtered audit log of state mutations with
  archive and best-effort rollback
- PersistenceManager: snapshot saves with write-temp-then-rename, read-back
  verification and the no-silent-shrink guard
- PatternLearner: per (issue type, fix method) statistics, best known solution,
  idempotent key generalization
- MisdiagnosisAdvisor: read-only warnings about approaches that historically
  failed for an issue
- StateService: the one explicitly constructed owner that wires the above
- api: FastAPI router exposing the service to collaborators

The store records and advises. It never executes fixes itself.
"""

__version__ = "2.1.0"

STATE_FORMAT_VERSION = "2.0.0"
