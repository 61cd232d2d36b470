"""Block device, cache and mount handling for the provisioning pipeline."""
