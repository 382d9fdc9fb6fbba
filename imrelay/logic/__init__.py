"""Control tier: sessions, load balancing, online counts, storage and the HTTP push API."""