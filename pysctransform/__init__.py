from pysctransform.__version__ import __version__  # noqa: F401
from pysctransform.counts import CountMatrix
from pysctransform.default_inference import DefaultInference
from pysctransform.inference import Inference
from pysctransform.results import MethodResult
from pysctransform.results import TimingRecord
from pysctransform.vst import VST
from pysctransform.vst import compare_methods
from pysctransform.vst import gene_attr_table
from pysctransform.vst import timing_table
from pysctransform.vst import vst

__all__ = [
    "CountMatrix",
    "DefaultInference",
    "Inference",
    "MethodResult",
    "TimingRecord",
    "VST",
    "compare_methods",
    "gene_attr_table",
    "timing_table",
    "vst",
]
