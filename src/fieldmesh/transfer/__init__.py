"""Chunked host <-> device transfer pipelines."""

from fieldmesh.transfer.channel import TransferChannel, make_channel
from fieldmesh.transfer.pipeline import Downloader, TransferConfig, TransferPipeline, Uploader
from fieldmesh.transfer.pool import TransferWorkerPool

__all__ = [
    "TransferChannel",
    "make_channel",
    "TransferConfig",
    "TransferPipeline",
    "Uploader",
    "Downloader",
    "TransferWorkerPool",
]
