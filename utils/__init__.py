from .paths import CityPaths, write_run_info

__all__ = ['CityPaths', 'write_run_info']
