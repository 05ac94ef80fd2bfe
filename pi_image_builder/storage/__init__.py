"""Block device, partition, LVM and mount operations."""
