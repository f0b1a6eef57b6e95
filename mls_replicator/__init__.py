"""
MLS Replicator

Replicates MLS listing data from RESO Web API (OData) sources into
databases and search indexes, reconciles drift and purges records that
disappeared upstream.
"""

__version__ = "0.1.0"
