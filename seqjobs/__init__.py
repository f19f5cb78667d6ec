"""
seqjobs - Job orchestration for sequence-analysis tools.

Compiles MAGUS stage selections into ordered steps, builds argv for MAGUS
and XTree, and runs queued jobs one at a time with a durable file-backed
queue and a single-worker execution lock.
"""

__version__ = "0.1.0"
