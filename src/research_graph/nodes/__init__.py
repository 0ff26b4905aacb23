"""Pipeline stage adapters.

Each module wraps one remote collaborator (Model Service, Search Service
or the web) behind a small async function that returns validated
models. Graph bookkeeping lives in :mod:`research_graph.pipeline`.
"""
