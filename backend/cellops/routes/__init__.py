from importlib import import_module

modules = [
    'templates',
    'processes',
    'cultures',
    'deviations',
    'tasks',
]

for m in modules:
    import_module(f'.{m}', __name__)

__all__ = modules
