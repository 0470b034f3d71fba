from flask import Blueprint, request, jsonify, current_app, g

from models import Transaction, IncomeEntry, Withdrawal, _iso
from rewards.errors import validation_failed
from rewards.security import login_required_json

activity_bp = Blueprint('activity', __name__)

FEED_SOURCE_LIMIT = 100


def safe_float_convert(value, default=0.0):
    """Safely convert value to float"""
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


TRANSACTION_TITLES = {
    'activation': 'Rank Activation',
    'topup': 'Rank Top-up',
    'deposit': 'Funds Deposit',
    'withdrawal': 'Withdrawal',
    'transfer_in': 'Transfer Received',
    'transfer_out': 'Transfer Sent',
    'income_claim': 'Income Pool Claim',
    'payout_claim': 'Payout Claim',
    'welcome_bonus': 'Welcome Bonus',
}

INCOME_TITLES = {
    'referral': 'Referral Income',
    'level': 'Level Income',
    'global': 'Global Income',
}


def map_transaction_to_activity(transaction):
    return {
        'type': transaction.type,
        'title': TRANSACTION_TITLES.get(transaction.type, 'Transaction'),
        'status': transaction.status,
        'timestamp': _iso(transaction.created_at),
        'amount': safe_float_convert(transaction.amount),
        'source': 'transaction',
        'id': transaction.id,
    }


def map_income_to_activity(entry):
    level_text = f" (Level {entry.level})" if entry.kind == 'level' else ""
    return {
        'type': 'income',
        'title': f"{INCOME_TITLES.get(entry.kind, 'Income')}{level_text}",
        'status': 'completed',
        'timestamp': _iso(entry.created_at),
        'amount': safe_float_convert(entry.amount),
        'source': 'income',
        'id': entry.id,
    }


def map_withdrawal_to_activity(withdrawal):
    return {
        'type': 'withdraw',
        'title': 'Withdrawal Request',
        'status': withdrawal.status,
        'timestamp': _iso(withdrawal.created_at),
        'amount': safe_float_convert(withdrawal.amount),
        'source': 'withdrawal',
        'id': withdrawal.id,
    }


def build_activity_feed(user_id):
    """Merge the user's transactions, income entries and withdrawals, newest first."""
    activities = []

    transactions = Transaction.query.filter(
        Transaction.user_id == user_id,
        Transaction.type != 'withdrawal',
    ).order_by(Transaction.id.desc()).limit(FEED_SOURCE_LIMIT).all()
    activities.extend(map_transaction_to_activity(t) for t in transactions)

    entries = IncomeEntry.query.filter_by(recipient_id=user_id)\
        .order_by(IncomeEntry.id.desc()).limit(FEED_SOURCE_LIMIT).all()
    activities.extend(map_income_to_activity(e) for e in entries)

    withdrawals = Withdrawal.query.filter_by(user_id=user_id)\
        .order_by(Withdrawal.id.desc()).limit(FEED_SOURCE_LIMIT).all()
    activities.extend(map_withdrawal_to_activity(w) for w in withdrawals)

    activities.sort(key=lambda a: (a['timestamp'] or '', a['id'] or 0), reverse=True)
    return activities


@activity_bp.route('/api/recent_activity', methods=['GET'])
@login_required_json
def get_recent_activity():
    """
    Paginated activity feed for the logged-in user
    """
    page = request.args.get('page', 1, type=int)
    page_size = request.args.get('page_size',
                                 current_app.config.get('DEFAULT_PAGE_SIZE', 20),
                                 type=int)

    if page < 1:
        return validation_failed('Page must be greater than 0').to_response()

    max_page_size = current_app.config.get('MAX_PAGE_SIZE', 100)
    if page_size < 1 or page_size > max_page_size:
        return validation_failed(f'Page size must be between 1 and {max_page_size}').to_response()

    all_activities = build_activity_feed(g.user.id)
    offset = (page - 1) * page_size
    total = len(all_activities)

    return jsonify({
        'success': True,
        'activities': all_activities[offset:offset + page_size],
        'pagination': {
            'page': page,
            'page_size': page_size,
            'total': total,
            'pages': (total + page_size - 1) // page_size,
        },
    }), 200
