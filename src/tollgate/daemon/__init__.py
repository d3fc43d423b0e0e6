"""Tollgate daemon: accounting engine, session store and HTTP surface."""
