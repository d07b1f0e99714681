"""wdtagger: WaifuDiffusion-style multi-label image tagging service."""

__version__ = "0.1.0"
