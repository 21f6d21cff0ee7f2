from .base import QueryConfigError, QueryDecodeError, QueryError, QueryExecutor, QueryHttpError
from .jira import JiraQueryExecutor

__all__ = [
    "JiraQueryExecutor",
    "QueryConfigError",
    "QueryDecodeError",
    "QueryError",
    "QueryExecutor",
    "QueryHttpError",
]
