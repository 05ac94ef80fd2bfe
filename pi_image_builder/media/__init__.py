"""Base image download, verification, preparation and transfer."""
