"""UnitGraph: index source text into units, cluster them and assemble runnable bundles."""

__version__ = "0.3.0"
