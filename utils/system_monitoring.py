#!/usr/bin/env python3
"""
System Monitoring Module

This module provides utilities for monitoring process resources (memory, CPU, threads)
while a Markov chain is being built from text or persisted to the database.
"""

import os
import time
import threading
import psutil
from datetime import datetime


class ResourceMonitor:
    """
    Monitors process memory, CPU and thread usage.
    Provides methods to log resource usage and operation progress.
    """

    def __init__(self, logger, monitoring_interval=10.0, memory_warning_mb=None):
        """
        Initialize the resource monitor.

        Args:
            logger: Logger instance for recording resource metrics
            monitoring_interval (float): Interval in seconds between background checks
            memory_warning_mb (float, optional): Resident memory above which a warning is logged
        """
        self.logger = logger
        self.monitoring_interval = monitoring_interval
        self.memory_warning_mb = memory_warning_mb
        self.process = psutil.Process(os.getpid())

        self.monitoring_thread = None
        self._stop_event = threading.Event()

        # Track progress of long-running operations
        self.current_operation = None
        self.progress_percent = 0
        self.operation_start_time = None

    def get_resource_usage(self):
        """
        Get resource usage statistics for the current process.

        Returns:
            dict: Resource usage metrics for memory, CPU and threads
        """
        memory_info = self.process.memory_info()
        system_memory = psutil.virtual_memory()

        return {
            "timestamp": datetime.now().isoformat(),
            "memory": {
                "current_mb": memory_info.rss / (1024 * 1024),
                "system_percent_used": system_memory.percent
            },
            "cpu": {
                # Non-blocking: percentage since the previous call
                "process_percent": self.process.cpu_percent(interval=None),
                "cores": psutil.cpu_count()
            },
            "threads": threading.active_count(),
            "process_id": os.getpid()
        }

    def _monitoring_loop(self):
        """
        Internal monitoring loop that runs in a separate thread.
        Periodically logs resource usage until stopped.
        """
        while not self._stop_event.wait(self.monitoring_interval):
            try:
                resources = self.get_resource_usage()
            except psutil.Error as e:
                self.logger.error(f"Error in monitoring loop: {str(e)}")
                continue

            current_mb = resources["memory"]["current_mb"]
            if self.memory_warning_mb and current_mb > self.memory_warning_mb:
                self.logger.warning(
                    f"Memory usage at {current_mb:.2f} MB exceeds {self.memory_warning_mb:.2f} MB",
                    extra={"metrics": resources})
            else:
                self.logger.debug("Resource usage metrics", extra={
                    "metrics": resources,
                    "operation": self.current_operation
                })

    def start(self, operation_name=None):
        """
        Start resource monitoring in a background thread.

        Args:
            operation_name (str, optional): Name of the operation being monitored
        """
        if self.monitoring_thread and self.monitoring_thread.is_alive():
            return

        self.current_operation = operation_name
        self.progress_percent = 0
        self.operation_start_time = time.time()

        self._stop_event.clear()
        self.monitoring_thread = threading.Thread(
            target=self._monitoring_loop,
            daemon=True  # Make thread daemon so it doesn't block program exit
        )
        self.monitoring_thread.start()

        self.logger.info(f"Resource monitoring started for operation: {operation_name}", extra={
            "metrics": self.get_resource_usage(),
            "operation": operation_name
        })

    def stop(self):
        """
        Stop the resource monitoring thread.

        Returns:
            float or None: Duration of the monitored operation in seconds
        """
        if not self.monitoring_thread:
            return None

        self._stop_event.set()
        if self.monitoring_thread.is_alive():
            self.monitoring_thread.join(timeout=2.0)
        self.monitoring_thread = None

        duration = None
        if self.operation_start_time:
            duration = time.time() - self.operation_start_time

        metrics = self.get_resource_usage()
        metrics["duration_seconds"] = duration
        self.logger.info("Resource monitoring stopped", extra={
            "metrics": metrics,
            "operation": self.current_operation
        })

        self.current_operation = None
        self.progress_percent = 0
        self.operation_start_time = None
        return duration

    def log_progress(self, message, progress_percent=None, operation=None, extra_metrics=None):
        """
        Log progress of an ongoing operation with current resource metrics.

        Args:
            message (str): Progress message to log
            progress_percent (float, optional): Percentage of operation completed (0-100)
            operation (str, optional): Operation name (updates current_operation if provided)
            extra_metrics (dict, optional): Additional metrics to include in the log
        """
        if operation:
            self.current_operation = operation

        if progress_percent is not None:
            self.progress_percent = progress_percent

        metrics = {"system_resources": self.get_resource_usage()}
        if extra_metrics:
            metrics.update(extra_metrics)

        if self.progress_percent > 0:
            metrics["progress_percent"] = self.progress_percent

        if self.operation_start_time:
            metrics["elapsed_time"] = time.time() - self.operation_start_time

        self.logger.info(message, extra={
            "metrics": metrics,
            "operation": self.current_operation
        })
