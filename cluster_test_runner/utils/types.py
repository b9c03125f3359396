import pathlib as pl
import typing as tp

FileType = str | pl.Path
# Callable that writes a single line to a log, e.g. the scheduling log of a worker
LogFunc = tp.Callable[[str], None]
