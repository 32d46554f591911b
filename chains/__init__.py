"""Chain access: JSON-RPC provider with failover, gas oracle and USD price feed."""
