"""Edge tier: buckets, rooms, channels, rings, whitelist and configuration."""