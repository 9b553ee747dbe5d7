"""Record store for work items and projects.

:class:`WorkItemDB` is the only persistence the algorithms touch; everything
in :mod:`workplan.completion`, :mod:`workplan.ids` and
:mod:`workplan.migrate` goes through its methods.
"""

from workplan.store.db import WorkItemDB

__all__ = ["WorkItemDB"]
