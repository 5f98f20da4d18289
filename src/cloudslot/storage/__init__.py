"""Blob stores used to stage deployment packages."""

from .s3 import S3BlobStore

__all__ = ["S3BlobStore"]
