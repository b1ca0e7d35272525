from range_transfer.transport.base import RangeDownload
from range_transfer.transport.base import RangeTransport
from range_transfer.transport.http_transport import HttpRangeTransport


__all__ = ["HttpRangeTransport", "RangeDownload", "RangeTransport"]
