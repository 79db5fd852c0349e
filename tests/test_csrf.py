from barehub.csrf import CsrfTokens

def test_token_per_session(clock):
    tokens = CsrfTokens(clock)
    token = tokens.get_or_create('session')
    assert len(token) == 64
    assert tokens.get_or_create('session') == token
    assert tokens.get_or_create('other') != token

def test_validate(clock):
    tokens = CsrfTokens(clock)
    token = tokens.get_or_create('session')
    assert tokens.validate('session', token)
    assert not tokens.validate('session', 'f' * 64)
    assert not tokens.validate('session', None)
    assert not tokens.validate(None, token)
    assert not tokens.validate('unknown', token)

def test_idle_tokens_expire(clock):
    tokens = CsrfTokens(clock)
    tokens.get_or_create('idle')
    clock.advance(12 * 3600)
    tokens.get_or_create('busy')
    clock.advance(12 * 3600 + 1)
    assert tokens.sweep() == 1
    assert list(tokens.entries) == ['busy']
