"""
Lua Scripts

Server-side scripts executed atomically by Redis. Each script is loaded once
per client (EVALSHA) through ``RedisClient.run_script``.

Time values are passed in by the caller so that the scripts stay
deterministic and replicas agree on the clock source:
- the sliding window works in integer microseconds (exact in a Lua double)
- the token bucket works in float seconds

Author: System Architect
Date: 2025-12-13
"""

# KEYS[1] = ratelimit:<identity>
# ARGV = now_us, window_us, limit, unique member, ttl_ms
# Returns {allowed (0|1), remaining}
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count < limit then
    redis.call('ZADD', key, now, ARGV[4])
    redis.call('PEXPIRE', key, ARGV[5])
    return {1, limit - count - 1}
end
return {0, 0}
"""

# KEYS[1] = tokenbucket:<identity>
# ARGV = rate (tokens/s), capacity, now (s), requested, key ttl (s)
# Returns {allowed (0|1), floor(tokens left)}
TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local rate = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local requested = tonumber(ARGV[4])

local state = redis.call('HMGET', key, 'tokens', 'last')
local tokens = tonumber(state[1])
local last = tonumber(state[2])
if tokens == nil or last == nil then
    tokens = capacity
    last = now
end

local elapsed = math.max(0, now - last)
tokens = math.min(capacity, tokens + elapsed * rate)

local allowed = 0
if tokens >= requested then
    tokens = tokens - requested
    allowed = 1
end

redis.call('HSET', key, 'tokens', tostring(tokens), 'last', tostring(now))
redis.call('EXPIRE', key, ARGV[5])
return {allowed, math.floor(tokens)}
"""

# KEYS[1] = null:<key>, KEYS[2] = <key>
# ARGV = sentinel, ttl (s)
# Stores the negative marker and drops any positive twin in one step.
SET_NEGATIVE_SCRIPT = """
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
redis.call('DEL', KEYS[2])
return 1
"""

# KEYS[1] = lock:<key>; ARGV[1] = owner token
# Deletes the lock only if it is still held by the caller.
RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

# KEYS[1] = <key>, KEYS[2] = null:<key>
# ARGV = encoded value, ttl (ms)
# Stores the positive value and drops any negative marker in one step.
SET_POSITIVE_SCRIPT = """
redis.call('SET', KEYS[1], ARGV[1], 'PX', ARGV[2])
redis.call('DEL', KEYS[2])
return 1
"""
