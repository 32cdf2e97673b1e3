"""Schema v1 - Initial database schema.

This version includes tables for:
- Users and their payout wallets
- Channels and their owners
- Deals and the escrow settlement columns
- Deal messages (brief first, then the audit trail)
"""

DEAL_STATUSES = (
    'pending', 'negotiating', 'payment_pending', 'paid', 'creative_submitted',
    'creative_approved', 'scheduled', 'posted', 'verified', 'completed',
    'cancelled', 'refunded', 'declined',
)

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'users',
            'columns': [
                {'name': 'id', 'type': 'BIGSERIAL', 'primary_key': True},
                {'name': 'telegram_id', 'type': 'BIGINT', 'unique': True},
                {'name': 'username', 'type': 'TEXT'},
                {'name': 'wallet_address', 'type': 'TEXT'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ]
        },
        {
            'name': 'channels',
            'columns': [
                {'name': 'id', 'type': 'BIGSERIAL', 'primary_key': True},
                {'name': 'owner_id', 'type': 'BIGINT', 'nullable': False},
                {'name': 'telegram_channel_id', 'type': 'BIGINT', 'nullable': False, 'unique': True},
                {'name': 'username', 'type': 'TEXT'},
                {'name': 'title', 'type': 'TEXT'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['owner_id'], 'references': 'users(id)'}
            ],
            'indexes': [
                {'name': 'idx_channels_owner', 'columns': ['owner_id']}
            ]
        },
        {
            'name': 'deals',
            'columns': [
                {'name': 'id', 'type': 'BIGSERIAL', 'primary_key': True},
                {'name': 'deal_type', 'type': 'TEXT', 'nullable': False},
                {'name': 'channel_id', 'type': 'BIGINT', 'nullable': False},
                {'name': 'channel_owner_id', 'type': 'BIGINT', 'nullable': False},
                {'name': 'advertiser_id', 'type': 'BIGINT', 'nullable': False},
                {'name': 'ad_format', 'type': 'TEXT', 'nullable': False, 'default': "'post'"},
                {'name': 'price', 'type': 'NUMERIC(20, 9)', 'nullable': False},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'pending'"},
                {'name': 'escrow_address', 'type': 'TEXT'},
                {'name': 'channel_owner_wallet_address', 'type': 'TEXT'},
                {'name': 'payment_tx_hash', 'type': 'TEXT'},
                {'name': 'payment_confirmed_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'scheduled_post_time', 'type': 'TIMESTAMPTZ'},
                {'name': 'actual_post_time', 'type': 'TIMESTAMPTZ'},
                {'name': 'post_message_id', 'type': 'BIGINT'},
                {'name': 'post_verification_until', 'type': 'TIMESTAMPTZ'},
                {'name': 'min_publication_duration_days', 'type': 'INT', 'nullable': False, 'default': '1'},
                {'name': 'refund_tx_hash', 'type': 'TEXT'},
                {'name': 'release_tx_hash', 'type': 'TEXT'},
                {'name': 'timeout_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'checks': [
                "deal_type IN ('listing', 'campaign')",
                "status IN (" + ', '.join(f"'{s}'" for s in DEAL_STATUSES) + ")",
                "NOT (release_tx_hash IS NOT NULL AND refund_tx_hash IS NOT NULL)",
                "(status = 'refunded') = (refund_tx_hash IS NOT NULL)",
            ],
            'foreign_keys': [
                {'columns': ['channel_id'], 'references': 'channels(id)'},
                {'columns': ['channel_owner_id'], 'references': 'users(id)'},
                {'columns': ['advertiser_id'], 'references': 'users(id)'}
            ],
            'indexes': [
                {'name': 'idx_deals_status', 'columns': ['status', 'created_at']},
                {'name': 'idx_deals_escrow', 'columns': ['escrow_address'], 'unique': True,
                 'where': 'escrow_address IS NOT NULL'},
                {'name': 'idx_deals_payment_tx', 'columns': ['payment_tx_hash'], 'unique': True,
                 'where': 'payment_tx_hash IS NOT NULL'},
                {'name': 'idx_deals_post_due', 'columns': ['scheduled_post_time'],
                 'where': 'post_message_id IS NULL'},
                {'name': 'idx_deals_verification', 'columns': ['post_verification_until']}
            ]
        },
        {
            'name': 'deal_messages',
            'columns': [
                {'name': 'id', 'type': 'BIGSERIAL', 'primary_key': True},
                {'name': 'deal_id', 'type': 'BIGINT', 'nullable': False},
                {'name': 'sender_id', 'type': 'BIGINT'},
                {'name': 'message_text', 'type': 'TEXT', 'nullable': False},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['deal_id'], 'references': 'deals(id)'}
            ],
            'indexes': [
                {'name': 'idx_deal_messages_deal', 'columns': ['deal_id', 'created_at']}
            ]
        }
    ],
    'triggers': [
        {
            'name': 'trg_deals_updated_at',
            'function_name': 'touch_deals_updated_at',
            'function_body': 'BEGIN NEW.updated_at = now(); RETURN NEW; END;',
            'timing': 'BEFORE',
            'event': 'UPDATE',
            'table': 'deals'
        }
    ],
    'migrations': []
}
