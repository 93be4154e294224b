"""Relayer: fee schedule, request handling and an HTTP client."""

from velo.relayer.client import RelayerClient
from velo.relayer.fees import FeeSchedule
from velo.relayer.service import RelayerService

__all__ = ["FeeSchedule", "RelayerClient", "RelayerService"]
