"""Worker Bridge application shell.

Wires the :mod:`WorkerLink` components into one session and hosts the
process-wide concerns: logging setup and crash reporting.
"""
