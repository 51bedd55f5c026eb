from .transcoder import Transcoder, TranscodeResult, TranscodeStatus
from .demo import DemoService, DemoResult
from .resolver import Track, TrackResolver
from .formats import FormatProcessor, FormatRunResult
from .metadata import ModelMetadataStore, ProductMetadataStore
from .purchase import PurchaseContext
from .streaming import StreamService

__all__ = [
    'Transcoder',
    'TranscodeResult',
    'TranscodeStatus',
    'DemoService',
    'DemoResult',
    'Track',
    'TrackResolver',
    'FormatProcessor',
    'FormatRunResult',
    'ModelMetadataStore',
    'ProductMetadataStore',
    'PurchaseContext',
    'StreamService',
]
