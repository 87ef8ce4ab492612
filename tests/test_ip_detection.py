"""Client IP detection from proxy headers"""

from core.ip_detection import (
    get_real_client_ip, is_cloudflare_request, is_private_ip, is_proxy_request, is_valid_ip,
)


class TestValidation:
    def test_valid_ips(self):
        assert is_valid_ip('8.8.8.8')
        assert is_valid_ip('2001:4860:4860::8888')
        assert not is_valid_ip('not-an-ip')
        assert not is_valid_ip('')
        assert not is_valid_ip(None)

    def test_private_ranges(self):
        for ip in ('10.0.0.1', '192.168.1.10', '172.16.5.4', '127.0.0.1', '169.254.1.1', '::1'):
            assert is_private_ip(ip), ip
        for ip in ('8.8.8.8', '1.1.1.1', '93.184.216.34'):
            assert not is_private_ip(ip), ip

    def test_invalid_is_not_private(self):
        assert not is_private_ip('garbage')


class TestRealClientIp:
    def test_cloudflare_header_wins(self):
        headers = {'CF-Connecting-IP': '1.1.1.1', 'X-Forwarded-For': '8.8.8.8'}
        assert get_real_client_ip(headers, '10.0.0.1') == '1.1.1.1'

    def test_first_hop_of_forwarded_for(self):
        headers = {'X-Forwarded-For': '8.8.8.8, 10.0.0.2, 10.0.0.3'}
        assert get_real_client_ip(headers, '10.0.0.3') == '8.8.8.8'

    def test_private_header_values_skipped(self):
        headers = {'X-Forwarded-For': '192.168.0.5', 'X-Real-IP': '93.184.216.34'}
        assert get_real_client_ip(headers) == '93.184.216.34'

    def test_private_allowed_when_requested(self):
        headers = {'X-Forwarded-For': '192.168.0.5'}
        assert get_real_client_ip(headers, allow_private=True) == '192.168.0.5'

    def test_invalid_values_skipped(self):
        headers = {'X-Forwarded-For': 'unknown', 'X-Real-IP': '1.1.1.1'}
        assert get_real_client_ip(headers) == '1.1.1.1'

    def test_falls_back_to_peer(self):
        assert get_real_client_ip({}, '10.1.2.3') == '10.1.2.3'

    def test_last_resort(self):
        assert get_real_client_ip({}, None) == '127.0.0.1'
        assert get_real_client_ip({}, 'bogus') == '127.0.0.1'


class TestRequestKinds:
    def test_cloudflare_detection(self):
        assert is_cloudflare_request({'CF-Ray': '8a1b2c3d4e5f-GRU'})
        assert not is_cloudflare_request({'X-Forwarded-For': '8.8.8.8'})

    def test_proxy_detection(self):
        assert is_proxy_request({'x-forwarded-for': '8.8.8.8'})
        assert not is_proxy_request({'User-Agent': 'curl/8.0'})
