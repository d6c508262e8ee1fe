"""
Remote Blob Clients: one encrypted blob per owner.

- base: abstract contract shared by all stores
- s3_store: S3 object per owner (boto3)
- supabase: PostgREST table row per owner (httpx)
"""

from .base import RemoteBlobClient

__all__ = ["RemoteBlobClient"]
