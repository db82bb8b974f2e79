from .http_tool import HttpToolExecutor, http_tool

__all__ = ['HttpToolExecutor', 'http_tool']
