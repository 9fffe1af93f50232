"""Hook pipelines and the default create/query/update/delete steps."""

from spine_orm.hooks.book import ACTIONS, Flow, Hook, HookBook, Pipeline
from spine_orm.hooks.defaults import default_book, register_defaults, save_record

__all__ = [
    "ACTIONS",
    "Flow",
    "Hook",
    "HookBook",
    "Pipeline",
    "default_book",
    "register_defaults",
    "save_record",
]
