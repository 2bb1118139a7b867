"""Built-in provider plugins. Registration lives in `spark.plugins.registry`."""
