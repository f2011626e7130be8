#!/usr/bin/env python3
"""
Exceptions raised by the analysis pipeline
"""


class PipelineError(Exception):
    """Base class for all pipeline errors"""


class MalformedInputError(PipelineError):
    """Input file or table has a bad structure (duplicate ids, non-numeric body, ...)"""


class InvalidThresholdError(PipelineError):
    """A configured threshold is out of range or inconsistent"""


class InsufficientGenesError(PipelineError):
    """The matrix has fewer genes than a stage requires"""


class InsufficientCellsError(PipelineError):
    """The matrix has fewer cells than a stage requires"""


class EmptyCellError(PipelineError):
    """One or more cells have a total count of zero"""

    def __init__(self, cells):
        self.cells = list(cells)
        preview = ", ".join(self.cells[:5])
        more = f" (+{len(self.cells) - 5} more)" if len(self.cells) > 5 else ""
        super().__init__(
            f"{len(self.cells)} cells have zero total counts: {preview}{more}. "
            "Remove them with the QC filter before normalizing."
        )


class EmptyGroupError(PipelineError):
    """A requested group of cells contains no cells"""


class UnmatchedKeyError(PipelineError):
    """Cells whose key has no row in the covariates table"""

    def __init__(self, keys):
        self.keys = list(keys)
        preview = ", ".join(map(str, self.keys[:5]))
        more = f" (+{len(self.keys) - 5} more)" if len(self.keys) > 5 else ""
        super().__init__(
            f"{len(self.keys)} keys not found in covariates table: {preview}{more}"
        )


class MissingKeyError(PipelineError, KeyError):
    """A required .obs column, embedding or graph is absent from the AnnData"""

    def __str__(self):
        return str(self.args[0]) if self.args else ""
