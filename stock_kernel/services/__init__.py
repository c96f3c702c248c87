"""Write-side services.  Every service flushes; none commits."""
