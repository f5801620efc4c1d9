# Services package.
#
# Each module exposes one service class that encapsulates business logic
# and database access for a single concern:
#
#   abuse_guard         — per-IP request log, automatic time-bounded bans
#   rbac_service        — role / permission resolution and assignment
#   identity_service    — register, login, refresh, change password
#   moderation_service  — comment votes, reports and lifecycle
#   user_service        — profile read and account deletion
#
# Services receive a TransactionRunner (and their other collaborators)
# through the constructor; ``app.container.build_services`` wires them
# once at process start.  Every service method that touches storage runs
# its queries inside a unit of work handed to the runner, which owns the
# commit / rollback boundary.
