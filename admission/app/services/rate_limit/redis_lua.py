"""Redis Lua scripts for distributed rate limiting.

Each check runs as one script so that concurrent callers across instances
are totally ordered by Redis and can never observe the same pre-update
state. The clock is read with TIME inside the script so every instance
agrees on window boundaries regardless of local clock skew.

All scripts return integers except the server time, which is returned as a
string because Redis truncates Lua numbers to integers.
"""

# Effects replication is required before writing after TIME on Redis < 5
_PRELUDE = """
    if redis.replicate_commands then
        pcall(redis.replicate_commands)
    end
    local t = redis.call('TIME')
    local now = tonumber(t[1]) + tonumber(t[2]) / 1000000
"""

# KEYS[1] window set
# ARGV: window, limit, cost, ttl, member prefix
# Returns {allowed, remaining, reset_after, retry_after, now}
SLIDING_WINDOW_SCRIPT = _PRELUDE + """
    local key = KEYS[1]
    local window = tonumber(ARGV[1])
    local limit = tonumber(ARGV[2])
    local cost = tonumber(ARGV[3])
    local ttl = tonumber(ARGV[4])
    local member = ARGV[5]

    -- Record the attempt first, then prune and count
    for i = 1, cost do
        redis.call('ZADD', key, now, member .. ':' .. i)
    end
    redis.call('ZREMRANGEBYSCORE', key, '-inf', string.format('(%.6f', now - window))
    local count = redis.call('ZCARD', key)

    local allowed = 1
    local remaining = limit - count
    local retry_after = 0
    local wait_rank = 0

    if count > limit then
        -- Rejected attempts are not counted against the quota
        for i = 1, cost do
            redis.call('ZREM', key, member .. ':' .. i)
        end
        allowed = 0
        remaining = 0
        -- Entry whose expiry frees enough room for this cost
        wait_rank = count - limit - 1
    end

    local reset_after = 0
    local entry = redis.call('ZRANGE', key, wait_rank, wait_rank, 'WITHSCORES')
    if entry[2] then
        reset_after = math.max(0, math.ceil(tonumber(entry[2]) + window - now))
    end
    if allowed == 0 then
        retry_after = math.max(1, reset_after)
    end

    redis.call('EXPIRE', key, ttl)
    return {allowed, remaining, reset_after, retry_after, string.format('%.6f', now)}
"""

# KEYS[1] bucket hash {tokens, last_refill}
# ARGV: capacity, refill_rate, cost, ttl
# Returns {allowed, remaining, reset_after, retry_after, now}
TOKEN_BUCKET_SCRIPT = _PRELUDE + """
    local key = KEYS[1]
    local capacity = tonumber(ARGV[1])
    local rate = tonumber(ARGV[2])
    local cost = tonumber(ARGV[3])
    local ttl = tonumber(ARGV[4])

    local state = redis.call('HMGET', key, 'tokens', 'last_refill')
    local tokens = tonumber(state[1])
    local last_refill = tonumber(state[2])
    if tokens == nil or last_refill == nil then
        tokens = capacity
        last_refill = now
    end

    -- Whole tokens only; the unused fraction stays in last_refill
    local elapsed = math.max(0, now - last_refill)
    local refilled = math.floor(elapsed * rate)
    if refilled > 0 then
        tokens = tokens + refilled
        last_refill = last_refill + refilled / rate
    end
    if tokens >= capacity then
        tokens = capacity
        last_refill = now
    end
    local progress = math.max(0, now - last_refill)

    local allowed = 0
    local retry_after = 0
    if tokens >= cost then
        tokens = tokens - cost
        allowed = 1
    else
        retry_after = math.max(1, math.ceil((cost - tokens) / rate - progress))
    end

    local reset_after = 0
    if tokens < capacity then
        reset_after = math.max(0, math.ceil((capacity - tokens) / rate - progress))
    end

    -- Refill progress persists even when the check is rejected
    redis.call('HSET', key, 'tokens', tokens, 'last_refill', string.format('%.6f', last_refill))
    redis.call('EXPIRE', key, ttl)
    return {allowed, math.floor(tokens), reset_after, retry_after, string.format('%.6f', now)}
"""

# KEYS[1] bucket hash
# ARGV: capacity, cost
# Returns 1 when tokens were returned, 0 when the bucket is gone
TOKEN_BUCKET_REFUND_SCRIPT = """
    local key = KEYS[1]
    local capacity = tonumber(ARGV[1])
    local cost = tonumber(ARGV[2])
    local tokens = tonumber(redis.call('HGET', key, 'tokens'))
    if tokens == nil then
        return 0
    end
    redis.call('HSET', key, 'tokens', math.min(capacity, tokens + cost))
    return 1
"""

# KEYS[1] window set
# ARGV: window
# Returns {used}
SLIDING_WINDOW_PEEK_SCRIPT = _PRELUDE + """
    local used = redis.call('ZCOUNT', KEYS[1], now - tonumber(ARGV[1]), '+inf')
    return {used}
"""

# KEYS[1] bucket hash
# ARGV: capacity, refill_rate
# Returns {tokens}
TOKEN_BUCKET_PEEK_SCRIPT = _PRELUDE + """
    local capacity = tonumber(ARGV[1])
    local rate = tonumber(ARGV[2])
    local state = redis.call('HMGET', KEYS[1], 'tokens', 'last_refill')
    local tokens = tonumber(state[1])
    local last_refill = tonumber(state[2])
    if tokens == nil or last_refill == nil then
        return {capacity}
    end
    local refilled = math.floor(math.max(0, now - last_refill) * rate)
    return {math.floor(math.min(capacity, tokens + refilled))}
"""
