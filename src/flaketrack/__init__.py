"""flaketrack — агрегация результатов тестов и аналитика flaky-тестов."""

__version__ = "0.3.0"
