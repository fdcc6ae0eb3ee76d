"""toolflow - Flow execution engine.

Runs user-authored graphs of typed nodes (triggers, API calls, transforms,
UI and return nodes, sub-flow calls) as callable tools, producing an
auditable execution trace for every invocation.
"""

__version__ = "0.1.0"
