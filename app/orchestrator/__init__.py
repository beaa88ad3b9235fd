"""Pipeline orchestration: controller, watchdog and bootstrap helpers."""
