"""
Test Suite for the Learning State Store

- test_path_document: dotted-path tree, ownership, notifications
- test_change_log: importance policy, bounds, archive, rollback
- test_persistence: atomic saves, no-silent-shrink guard, load outcomes
- test_pattern_learner / test_generalizer / test_advisor: learning layer
- test_service / test_api: wiring, end-to-end scenarios, HTTP routes
"""
