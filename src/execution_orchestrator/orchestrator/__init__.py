"""Central scheduler that dispatches workflow executions to HTTP workers.

Each tick pulls ready executions from a SQLite-backed registry, admits
them against shared resource budgets, and posts them to the worker for
their workflow type. Workers report back through a callback endpoint.
Every status change goes through the state machine controller, which
serializes per execution and compare-and-sets against the registry so
that late, duplicate or racing notices cannot apply twice.
"""
