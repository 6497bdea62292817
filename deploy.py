# SPDX-License-Identifier: AGPL-3.0-only
# (c) 2025

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path

import aiohttp
import eth_keys.exceptions
import rlp
from eth_account import Account
from eth_utils import keccak, to_canonical_address, to_checksum_address
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import Web3Exception

DEFAULT_RPC_URL = 'http://localhost:8545'
DEFAULT_ARTIFACT_PATH = './build/contracts/EventValue.json'
DEFAULT_KEY_FILE = '.secret'
CONSTRUCTOR_ARG = 100

# RPC failures surface as client/socket errors or web3 errors (Web3RPCError
# carries the node's error payload).
NETWORK_ERRORS = (aiohttp.ClientError, OSError, Web3Exception)

logger = logging.getLogger('deploy')


class DeployError(Exception):
	kind = 'DeployError'


class FileError(DeployError):
	kind = 'FileError'


class ParseError(DeployError):
	kind = 'ParseError'


class PrivateKeyError(DeployError):
	kind = 'KeyError'


class NetworkError(DeployError):
	kind = 'NetworkError'


def read_key_file(path):
	"""Read a hex private key from `path` and return it as raw bytes."""
	try:
		text = Path(path).read_text(encoding='utf-8').strip()
	except OSError as e:
		raise FileError(f'cannot read key file {str(path)!r}: {e.strerror or e}') from e
	except UnicodeDecodeError as e:
		raise PrivateKeyError(f'key file {str(path)!r} is not text: {e}') from e
	try:
		return bytes.fromhex(text.removeprefix('0x'))
	except ValueError as e:
		raise PrivateKeyError(f'key file {str(path)!r} does not contain hex: {e}') from e


def load_private_key(literal=None, key_file=None):
	if key_file is not None:
		return read_key_file(key_file)
	return literal


@dataclasses.dataclass(frozen=True)
class Artifact:
	abi: list
	bytecode: str

	@classmethod
	def from_json(cls, text, source='<artifact>'):
		"""Parse a compiler build artifact, keeping only `abi` and `bytecode`.

		Raises ParseError naming the field that is missing or malformed.
		"""
		try:
			record = json.loads(text)
		except ValueError as e:
			raise ParseError(f'{source}: not valid JSON: {e}') from e
		if not isinstance(record, dict):
			raise ParseError(f'{source}: expected a JSON object, got {type(record).__name__}')

		match record.get('abi'):
			case None:
				raise ParseError(f'{source}: missing field \'abi\'')
			case list() as abi:
				pass
			case other:
				raise ParseError(f'{source}: field \'abi\' must be a list, got {type(other).__name__}')

		match record.get('bytecode'):
			case None:
				raise ParseError(f'{source}: missing field \'bytecode\'')
			case str() as bytecode if bytecode.removeprefix('0x'):
				pass
			case str():
				raise ParseError(f'{source}: field \'bytecode\' is empty')
			case other:
				raise ParseError(f'{source}: field \'bytecode\' must be a hex string, got {type(other).__name__}')

		return cls(abi=abi, bytecode=bytecode)


def load_artifact(path):
	try:
		text = Path(path).read_text(encoding='utf-8')
	except OSError as e:
		raise FileError(f'cannot read artifact {str(path)!r}: {e.strerror or e}') from e
	except UnicodeDecodeError as e:
		raise ParseError(f'{path}: not valid UTF-8 text: {e}') from e
	return Artifact.from_json(text, source=str(path))


def contract_address(sender, nonce):
	"""Address of the contract created by `sender` at `nonce` (CREATE)."""
	return to_checksum_address(keccak(rlp.encode([to_canonical_address(sender), nonce]))[12:])


def connect(rpc_url):
	# One request per step, never re-sent.
	return AsyncWeb3(AsyncHTTPProvider(rpc_url, exception_retry_configuration=None))


async def disconnect(w3):
	if isinstance(w3.provider, AsyncHTTPProvider):
		await w3.provider.disconnect()


class PendingDeployment:
	def __init__(self, w3, address, tx_hash):
		self.w3 = w3
		self.address = address
		self.tx_hash = tx_hash

	async def deployed(self):
		"""Wait, without a timeout, until the creation transaction is mined."""
		try:
			receipt = await self.w3.eth.wait_for_transaction_receipt(self.tx_hash, timeout=None)
		except NETWORK_ERRORS as e:
			raise NetworkError(f'waiting for {Web3.to_hex(self.tx_hash)} failed: {e}') from e

		if receipt['status'] != 1:
			raise NetworkError(f'deployment transaction {Web3.to_hex(self.tx_hash)} reverted')
		if receipt['contractAddress'] != self.address:
			logger.warning('receipt reports contract at %s, expected %s', receipt['contractAddress'], self.address)
			self.address = receipt['contractAddress']
		logger.info('confirmed in block %s (gas used %s)', receipt['blockNumber'], receipt['gasUsed'])
		return receipt


class Wallet:
	"""A private key bound to a node connection."""

	def __init__(self, private_key, w3):
		try:
			self.account = Account.from_key(private_key)
		except (ValueError, TypeError, eth_keys.exceptions.ValidationError) as e:
			raise PrivateKeyError(f'invalid private key: {e}') from e
		self.w3 = w3

	@property
	def address(self):
		return self.account.address

	async def deploy(self, abi, bytecode, *args):
		try:
			constructor = self.w3.eth.contract(abi=abi, bytecode=bytecode).constructor(*args)
		except (Web3Exception, TypeError, ValueError) as e:
			raise ParseError(f'constructor arguments do not fit the artifact ABI: {e}') from e

		try:
			nonce = await self.w3.eth.get_transaction_count(self.address, 'pending')
			logger.info('deploying from %s with nonce %d', self.address, nonce)
			tx = await constructor.build_transaction({'from': self.address, 'nonce': nonce})
			signed = self.account.sign_transaction(tx)
			tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
		except NETWORK_ERRORS as e:
			raise NetworkError(f'submitting deployment failed: {e}') from e
		return PendingDeployment(self.w3, contract_address(self.address, nonce), tx_hash)


async def deploy_contract(artifact, wallet, *args):
	contract = await wallet.deploy(artifact.abi, artifact.bytecode, *args)
	print('contractAddress=', contract.address)
	print('deploy txHash=', Web3.to_hex(contract.tx_hash))
	sys.stdout.flush()

	logger.info('waiting for confirmation')
	return await contract.deployed()


async def run(args):
	private_key = load_private_key(args.private_key, args.key_file)
	artifact = load_artifact(args.artifact)
	logger.info('loaded %s (%d ABI entries)', args.artifact, len(artifact.abi))

	logger.info('connecting to %s', args.rpc)
	w3 = connect(args.rpc)
	try:
		wallet = Wallet(private_key, w3)
		return await deploy_contract(artifact, wallet, CONSTRUCTOR_ARG)
	finally:
		await disconnect(w3)


def build_parser():
	parser0 = argparse.ArgumentParser(allow_abbrev=False, description='Deploy the EventValue contract from its build artifact.')

	parser0.add_argument('--rpc', default=DEFAULT_RPC_URL, metavar='URL', help='The JSON-RPC endpoint to submit to. Default: %(default)s')
	parser0.add_argument('--artifact', default=DEFAULT_ARTIFACT_PATH, metavar='PATH', help='The build artifact holding abi and bytecode. Default: %(default)s')

	key_group = parser0.add_mutually_exclusive_group(required=True)
	key_group.add_argument('--private-key', metavar='HEX', help='The deployer private key.')
	key_group.add_argument('--key-file', nargs='?', const=DEFAULT_KEY_FILE, metavar='PATH', help=f'Read the deployer private key (hex) from %(metavar)s. Default when given without a path: {DEFAULT_KEY_FILE}')

	parser0.add_argument('-v', '--verbose', action='store_true', help='Log progress to stderr.')
	return parser0


def main(argv=None):
	args0 = build_parser().parse_args(argv)
	logging.basicConfig(
		level=logging.INFO if args0.verbose else logging.WARNING,
		format='%(asctime)s %(levelname)s %(message)s',
		stream=sys.stderr,
	)

	try:
		asyncio.run(run(args0))
	except DeployError as e:
		logger.error('%s: %s', e.kind, e)
		return 1
	return 0


def cli():
	sys.exit(main())


if __name__ == '__main__':
	cli()
